"""Append-only ledger of credits and debits per account.

An account is a ``(account_type, account_id)`` pair: the tournament account
collects entry fees and pays refunds, user accounts mirror what each player
paid in and what each organizer was paid out. Every entry stores the running
balance after it, and a per-account sequence number guarded by a unique
constraint so two concurrent writers cannot both extend the same balance.

Functions here never commit; callers run them inside ``atomic()``.
"""
import csv
import io
import logging
from datetime import datetime

from sqlalchemy import func

from models import db, LedgerEntry
from settlement.errors import ConsistencyError, InvalidAmount, ValidationError

logger = logging.getLogger(__name__)

ACCOUNT_TYPES = ('tournament', 'user')
ENTRY_TYPES = ('CREDIT', 'DEBIT')
CATEGORIES = ('TOURNAMENT_ENTRY', 'REFUND', 'ORGANIZER_PAYOUT')

CSV_COLUMNS = (
    'Date', 'Time', 'Sequence', 'Type', 'Category', 'Amount', 'Description',
    'TournamentId', 'RegistrationId', 'RunningBalance',
)


def _check_account(account_type: str) -> None:
    if account_type not in ACCOUNT_TYPES:
        raise ValidationError(f'Unknown account type {account_type!r}', account_type=account_type)


def latest_entry(account_type: str, account_id: int) -> LedgerEntry | None:
    return (
        LedgerEntry.query.filter_by(account_type=account_type, account_id=account_id)
        .order_by(LedgerEntry.sequence.desc())
        .first()
    )


def balance(account_type: str, account_id: int) -> int:
    _check_account(account_type)
    last = latest_entry(account_type, account_id)
    return last.balance_after if last else 0


def post_entry(
    account_type: str,
    account_id: int,
    entry_type: str,
    amount: int,
    category: str,
    description: str,
    tournament_id: int | None = None,
    registration_id: int | None = None,
    actor_id: int | None = None,
) -> LedgerEntry:
    _check_account(account_type)
    if entry_type not in ENTRY_TYPES:
        raise ValidationError(f'Unknown entry type {entry_type!r}', entry_type=entry_type)
    if category not in CATEGORIES:
        raise ValidationError(f'Unknown ledger category {category!r}', category=category)
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount('Ledger amounts must be positive integers', amount=amount)

    last = latest_entry(account_type, account_id)
    previous_balance = last.balance_after if last else 0
    signed = amount if entry_type == 'CREDIT' else -amount

    entry = LedgerEntry(
        account_type=account_type,
        account_id=account_id,
        sequence=(last.sequence + 1) if last else 1,
        entry_type=entry_type,
        amount=amount,
        balance_after=previous_balance + signed,
        category=category,
        description=description,
        tournament_id=tournament_id,
        registration_id=registration_id,
        actor_id=actor_id,
    )
    db.session.add(entry)
    db.session.flush()
    logger.info(
        'Ledger %s:%s %s %s (%s) -> balance %s',
        account_type, account_id, entry_type, amount, category, entry.balance_after,
    )
    return entry


def _filtered(account_type, account_id, entry_type=None, category=None, start=None, end=None):
    query = LedgerEntry.query.filter_by(account_type=account_type, account_id=account_id)
    if entry_type:
        query = query.filter(LedgerEntry.entry_type == entry_type)
    if category:
        query = query.filter(LedgerEntry.category == category)
    if start:
        query = query.filter(LedgerEntry.created_at >= start)
    if end:
        query = query.filter(LedgerEntry.created_at <= end)
    return query


def history(account_type, account_id, entry_type=None, category=None, start=None, end=None) -> list[LedgerEntry]:
    _check_account(account_type)
    query = _filtered(account_type, account_id, entry_type, category, start, end)
    return query.order_by(LedgerEntry.sequence.asc()).all()


def registration_net(registration_id: int, tournament_id: int) -> int:
    """Net amount the tournament account holds for one registration."""
    entries = LedgerEntry.query.filter_by(
        account_type='tournament', account_id=tournament_id, registration_id=registration_id
    ).all()
    return sum(entry.signed_amount for entry in entries)


def verify_account(account_type: str, account_id: int) -> int:
    """Recompute the balance from scratch and compare it with the stored one."""
    entries = history(account_type, account_id)
    running = 0
    for expected_sequence, entry in enumerate(entries, start=1):
        if entry.sequence != expected_sequence:
            raise ConsistencyError(
                'Ledger sequence gap',
                account=f'{account_type}:{account_id}',
                expected=expected_sequence,
                found=entry.sequence,
            )
        running += entry.signed_amount
        if entry.balance_after != running:
            raise ConsistencyError(
                'Ledger running balance mismatch',
                account=f'{account_type}:{account_id}',
                sequence=entry.sequence,
                stored=entry.balance_after,
                computed=running,
            )
    return running


def account_summary(account_type: str, account_id: int) -> dict:
    _check_account(account_type)
    rows = (
        db.session.query(LedgerEntry.entry_type, func.count(LedgerEntry.id), func.sum(LedgerEntry.amount))
        .filter_by(account_type=account_type, account_id=account_id)
        .group_by(LedgerEntry.entry_type)
        .all()
    )
    totals = {entry_type: (count, total or 0) for entry_type, count, total in rows}
    credit_count, total_credits = totals.get('CREDIT', (0, 0))
    debit_count, total_debits = totals.get('DEBIT', (0, 0))
    last = latest_entry(account_type, account_id)
    return {
        'account_type': account_type,
        'account_id': account_id,
        'total_credits': int(total_credits),
        'total_debits': int(total_debits),
        'credit_transactions': credit_count,
        'debit_transactions': debit_count,
        'total_transactions': credit_count + debit_count,
        'current_balance': last.balance_after if last else 0,
        'last_transaction_at': last.created_at.isoformat() if last else None,
        'last_transaction_amount': last.amount if last else None,
        'last_transaction_type': last.entry_type if last else None,
    }


def entry_to_dict(entry: LedgerEntry) -> dict:
    return {
        'id': entry.id,
        'account': f'{entry.account_type}:{entry.account_id}',
        'sequence': entry.sequence,
        'type': entry.entry_type,
        'category': entry.category,
        'amount': entry.amount,
        'balance_after': entry.balance_after,
        'description': entry.description,
        'tournament_id': entry.tournament_id,
        'registration_id': entry.registration_id,
        'created_at': entry.created_at.isoformat() if entry.created_at else None,
    }


def export_csv(account_type: str, account_id: int, start: datetime | None = None, end: datetime | None = None) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for entry in history(account_type, account_id, start=start, end=end):
        stamp = entry.created_at
        writer.writerow([
            stamp.strftime('%Y-%m-%d') if stamp else '',
            stamp.strftime('%H:%M:%S') if stamp else '',
            entry.sequence,
            entry.entry_type,
            entry.category,
            entry.amount,
            entry.description or '',
            entry.tournament_id or '',
            entry.registration_id or '',
            entry.balance_after,
        ])
    return buffer.getvalue()
