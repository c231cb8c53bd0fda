import logging
from contextlib import contextmanager

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from models import db
from settlement.errors import ConsistencyError, SettlementError

logger = logging.getLogger(__name__)


@contextmanager
def atomic(operation: str):
    """Run one engine operation as a single all-or-nothing transaction."""
    try:
        yield db.session
        db.session.commit()
    except SettlementError:
        db.session.rollback()
        raise
    except IntegrityError as exc:
        db.session.rollback()
        logger.error('%s aborted by a conflicting concurrent write: %s', operation, exc)
        raise ConsistencyError(f'{operation} lost a concurrent update, nothing was applied') from exc
    except Exception:
        db.session.rollback()
        logger.exception('%s aborted, transaction rolled back', operation)
        raise


def compare_and_set(model, criteria, values: dict) -> bool:
    """Conditional UPDATE; True when exactly one row matched ``criteria``."""
    result = db.session.execute(
        update(model).where(*criteria).values(**values)
    )
    return result.rowcount == 1
