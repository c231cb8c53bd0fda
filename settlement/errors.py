"""Typed errors raised by the settlement engine.

Every error carries a stable ``code`` for API clients, an HTTP status the
REST binding can use directly, and a ``details`` mapping with the structured
context needed to render a precise message.
"""


class SettlementError(Exception):
    code = 'SETTLEMENT_ERROR'
    status_code = 400

    def __init__(self, message: str | None = None, **details):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            'success': False,
            'error': self.code,
            'message': self.message,
            'details': self.details,
        }


# Lock violations -------------------------------------------------------

class FeeLocked(SettlementError):
    """Entry fee cannot change while registrations exist for the category."""

    code = 'FEE_LOCKED'
    status_code = 409

    def __init__(self, current_fee: int, attempted_fee: int, registration_count: int):
        self.current_fee = current_fee
        self.attempted_fee = attempted_fee
        self.registration_count = registration_count
        super().__init__(
            f'Entry fee is locked at {current_fee}: {registration_count} '
            f'registration(s) already reference this category',
            current_fee=current_fee,
            attempted_fee=attempted_fee,
            registration_count=registration_count,
        )


# State violations ------------------------------------------------------

class InvalidState(SettlementError):
    """Entity is not in a state that allows this action."""

    code = 'INVALID_STATE'
    status_code = 409


class AlreadyFinalized(InvalidState):
    """Entity already reached a terminal state."""

    code = 'ALREADY_FINALIZED'


class AlreadyPaid(InvalidState):
    """Payout installment has already been marked paid."""

    code = 'ALREADY_PAID'


# Timing violations -----------------------------------------------------

class NotYetDue(SettlementError):
    """Payout installment is not due yet."""

    code = 'NOT_YET_DUE'
    status_code = 409


# Validation errors -----------------------------------------------------

class ValidationError(SettlementError):
    """Request failed validation."""

    code = 'VALIDATION_ERROR'
    status_code = 400


class MissingReason(ValidationError):
    """A reason is required for this action."""

    code = 'MISSING_REASON'


class InvalidAmount(ValidationError):
    """Amount must be a non-negative integer in minor units."""

    code = 'INVALID_AMOUNT'


class AmountMismatch(ValidationError):
    """Submitted amount does not match the registration fee."""

    code = 'AMOUNT_MISMATCH'


class InvalidUpiId(ValidationError):
    """UPI identifier is malformed."""

    code = 'INVALID_UPI_ID'


class NotFound(SettlementError):
    """Requested entity does not exist."""

    code = 'NOT_FOUND'
    status_code = 404


class PermissionDenied(SettlementError):
    """Caller may not act on this entity."""

    code = 'FORBIDDEN'
    status_code = 403


# Consistency failures --------------------------------------------------

class ConsistencyError(SettlementError):
    """Stored state violates a ledger invariant or lost a concurrent write."""

    code = 'CONSISTENCY_ERROR'
    status_code = 409
