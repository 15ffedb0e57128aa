"""
portal/loyalty/errors.py
------------------------
Error taxonomy shared by the ledger evaluator and every route that calls it.

Each error carries a stable machine code and the HTTP status the app-level
error handler answers with. Messages are user-facing (shown in the admin UI
and on the scanner).
"""


class LedgerError(Exception):
    """Base class for all loyalty / ledger failures."""
    code = 'ledger_error'
    status_code = 400
    default_message = 'Request could not be processed.'

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {'ok': False, 'error': self.code, 'details': self.message}


class NotFound(LedgerError):
    """Customer id, visit id or scan token does not resolve."""
    code = 'not_found'
    status_code = 404
    default_message = 'Customer not found.'


class InvalidInput(LedgerError):
    """Malformed timestamp, promo kind, token or form field."""
    code = 'invalid_input'
    status_code = 400
    default_message = 'Invalid input.'


class DuplicateTimestamp(LedgerError):
    """Another visit of the same customer already has this exact start_at."""
    code = 'duplicate_timestamp'
    status_code = 409
    default_message = (
        'This customer already has a visit at that exact time. '
        'Change the minute or second and try again.'
    )


class InsufficientCredit(LedgerError):
    """A promo50 redemption was requested with no credit available."""
    code = 'insufficient_credit'
    status_code = 400
    default_message = 'This customer has no discount credit available.'


class NotEligible(LedgerError):
    """A birthday reward was requested outside the window or twice in it."""
    code = 'not_eligible'
    status_code = 400
    default_message = 'This customer is not inside a birthday reward window.'


class RedemptionConflict(LedgerError):
    """A concurrent request consumed the same credit / birthday occurrence first."""
    code = 'redemption_conflict'
    status_code = 409
    default_message = 'This reward was just redeemed by another request. Reload and try again.'
