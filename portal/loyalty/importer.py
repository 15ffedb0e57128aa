"""
portal/loyalty/importer.py
--------------------------
Historical visit import (`flask import-visits FILE.csv`).

Columns: customer_id or phone, start_at, promo_kind (default none), notes.

Imported rows describe visits that already happened, so they are written
as they are: source='import', no staff attribution, no credit or
birthday-window check. Each row still receives a redemption slot so the
live rule and its unique constraint keep working on top of the history.

Each row is its own transaction (insert + stats refresh + commit); a bad
row is skipped and logged without affecting the rows around it.
"""
import csv
import logging
from dataclasses import dataclass, field

from portal.customers.models import Customer
from portal.customers.validators import normalize_phone
from portal.loyalty.engine import PROMO_50, PROMO_BIRTHDAY, birthday_slot, next_redemption_slot
from portal.loyalty.errors import LedgerError, DuplicateTimestamp, InvalidInput, NotFound
from portal.visits.models import Visit, SOURCE_IMPORT
from portal.visits.validators import parse_start_at, parse_promo_kind

logger = logging.getLogger(__name__)


@dataclass
class ImportSummary:
    imported:  int = 0
    skipped:   list = field(default_factory=list)   # (line_no, reason)
    customers: set = field(default_factory=set)


def _resolve_customer(service, row: dict) -> Customer:
    customer_id = (row.get('customer_id') or '').strip()
    if customer_id:
        return service.directory.get(customer_id)

    try:
        phone = normalize_phone(row.get('phone'))
    except ValueError as e:
        raise InvalidInput(str(e)) from None
    if phone is None:
        raise InvalidInput('Row has neither customer_id nor phone.')

    matches = service.session.query(Customer).filter(Customer.phone_norm == phone).limit(2).all()
    if not matches:
        raise NotFound(f'No customer with phone {phone}.')
    if len(matches) > 1:
        raise InvalidInput(f'Phone {phone} matches more than one customer.')
    return matches[0]


def _import_row(service, row: dict) -> Visit:
    customer   = _resolve_customer(service, row)
    start_at   = parse_start_at(row.get('start_at'))
    promo_kind = parse_promo_kind(row.get('promo_kind'))
    ledger     = service.ledger

    if ledger.has_visit_at(customer.id, start_at):
        raise DuplicateTimestamp(f'Duplicate visit at {start_at.isoformat()}.')

    slot = None
    if promo_kind == PROMO_50:
        slot = next_redemption_slot(ledger.used_slots(customer.id, PROMO_50))
    elif promo_kind == PROMO_BIRTHDAY:
        slot = birthday_slot(customer.birthdate, start_at.date(), service.window)
        if slot in ledger.used_slots(customer.id, PROMO_BIRTHDAY):
            raise InvalidInput(f'Birthday reward for {slot} is already recorded.')

    visit = Visit(
        customer_id=customer.id,
        start_at=start_at,
        promo_kind=promo_kind,
        redemption_slot=slot,
        source=SOURCE_IMPORT,
        notes=(row.get('notes') or '').strip() or None,
        staff_user_id=None,
    )
    ledger.append_visit(visit)
    ledger.refresh_stats(customer.id)
    service.session.commit()
    return visit


def import_visits(service, stream) -> ImportSummary:
    """Read CSV rows from `stream` and record them through `service`'s session."""
    summary = ImportSummary()
    reader = csv.DictReader(stream)

    # Line 1 is the header
    for line_no, row in enumerate(reader, start=2):
        try:
            visit = _import_row(service, row)
        except LedgerError as e:
            service.session.rollback()
            summary.skipped.append((line_no, e.message))
            logger.warning("Import: skipped line %d (%s): %s", line_no, e.code, e.message)
            continue
        summary.imported += 1
        summary.customers.add(visit.customer_id)

    logger.info("Import finished: %d imported, %d skipped, %d customer(s) touched",
                summary.imported, len(summary.skipped), len(summary.customers))
    return summary
