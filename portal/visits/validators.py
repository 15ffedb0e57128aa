"""
portal/visits/validators.py
---------------------------
Parsing for visit request fields. Failures raise InvalidInput so routes,
the scanner and the import command report them the same way.
"""
from datetime import datetime, timezone

from portal.loyalty.engine import PROMO_KINDS, PROMO_NONE
from portal.loyalty.errors import InvalidInput
from portal.visits.models import SOURCES


def parse_start_at(value) -> datetime:
    """
    Accept an ISO 8601 string (trailing 'Z' allowed) or a datetime.
    Returns naive UTC truncated to whole seconds, the granularity the
    (customer_id, start_at) uniqueness rule works at.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw[-1] in 'Zz':
            raw = raw[:-1] + '+00:00'
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            raise InvalidInput(f'start_at is not a valid ISO timestamp: {value!r}') from None
    else:
        raise InvalidInput('start_at is required.')

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(microsecond=0)


def parse_promo_kind(value) -> str:
    """None / empty means an ordinary visit."""
    if value is None:
        return PROMO_NONE
    kind = str(value).strip().lower()
    if not kind:
        return PROMO_NONE
    if kind not in PROMO_KINDS:
        raise InvalidInput(f'promo_kind must be one of {", ".join(PROMO_KINDS)}.')
    return kind


def parse_source(value, default: str) -> str:
    source = str(value or default).strip().lower()
    if source not in SOURCES:
        raise InvalidInput(f'source must be one of {", ".join(SOURCES)}.')
    return source


def parse_paging(args, default_limit: int, max_limit: int) -> tuple:
    """(limit, offset) from query args, clamped like the list endpoints expect."""
    try:
        limit = int(args.get('limit', default_limit))
    except (TypeError, ValueError):
        limit = default_limit
    try:
        offset = int(args.get('offset', 0))
    except (TypeError, ValueError):
        offset = 0
    return min(max_limit, max(1, limit)), max(0, offset)


def parse_flag(value) -> bool:
    """Checkbox / query-string / JSON boolean."""
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'on')


def parse_notes(value):
    notes = str(value or '').strip()
    if len(notes) > 500:
        raise InvalidInput('Notes must be 500 characters or fewer.')
    return notes or None
