"""Payment settlement and ledger engine.

Submodules are imported directly (``from settlement import ledger``); this
package deliberately has no import-time side effects because ``models``
depends on ``settlement.errors``.
"""
