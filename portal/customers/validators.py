"""
portal/customers/validators.py
------------------------------
Pure-Python normalisation and validation for customer form data.
validate_customer_form returns a dict of field -> error_message;
an empty dict means all supplied fields are valid.
"""
import re
from datetime import date


PHONE_DIGITS = 10
ROW_COLOR_RE = re.compile(r'^#[0-9a-f]{6}$')
DMY_RE       = re.compile(r'^(\d{2})/(\d{2})/(\d{4})$')
ISO_DATE_RE  = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def _blank(value) -> bool:
    return value is None or str(value).strip() == ''


def normalize_phone(raw):
    """
    Keep digits only. Empty → None. Anything else must be exactly
    10 digits, otherwise ValueError.
    """
    if _blank(raw):
        return None
    digits = re.sub(r'\D', '', str(raw))
    if not digits:
        return None
    if len(digits) != PHONE_DIGITS:
        raise ValueError(f'Phone must have exactly {PHONE_DIGITS} digits (or be empty).')
    return digits


def parse_birthdate(raw):
    """
    Accept YYYY-MM-DD or DD/MM/YYYY. Empty → None.
    Raises ValueError for other shapes and impossible dates (e.g. 2023-02-30).
    """
    if _blank(raw):
        return None
    if isinstance(raw, date):
        return raw
    s = str(raw).strip()
    if ISO_DATE_RE.match(s):
        try:
            return date.fromisoformat(s)
        except ValueError:
            raise ValueError('Birthdate is not a real calendar date.') from None
    m = DMY_RE.match(s)
    if m:
        day, month, year = (int(g) for g in m.groups())
        try:
            return date(year, month, day)
        except ValueError:
            raise ValueError('Birthdate is not a real calendar date.') from None
    raise ValueError('Birthdate must be YYYY-MM-DD (or DD/MM/YYYY).')


def normalize_row_color(raw) -> str:
    color = str(raw or '').strip().lower()
    if not ROW_COLOR_RE.match(color):
        raise ValueError('row_color must use the #RRGGBB format.')
    return color


def validate_customer_form(data: dict, creating: bool = True) -> tuple:
    """
    Validate and normalise create / edit payloads.

    On create, full_name is required. On edit only the keys present in
    `data` are considered (an empty string clears the field).

    Returns:
        (cleaned, errors); cleaned holds only the fields to write.
    """
    cleaned = {}
    errors  = {}

    # ── full_name ─────────────────────────────────────────────────
    if creating or 'full_name' in data:
        name = str(data.get('full_name') or '').strip()
        if creating and not name:
            errors['full_name'] = 'Full name is required.'
        elif len(name) > 150:
            errors['full_name'] = 'Full name must be 150 characters or fewer.'
        else:
            cleaned['full_name'] = name or None

    # ── phone_norm ────────────────────────────────────────────────
    if 'phone_norm' in data:
        try:
            cleaned['phone_norm'] = normalize_phone(data.get('phone_norm'))
        except ValueError as e:
            errors['phone_norm'] = str(e)

    # ── birthdate ─────────────────────────────────────────────────
    if 'birthdate' in data:
        try:
            cleaned['birthdate'] = parse_birthdate(data.get('birthdate'))
        except ValueError as e:
            errors['birthdate'] = str(e)

    return cleaned, errors
