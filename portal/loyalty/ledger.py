"""
portal/loyalty/ledger.py
------------------------
Storage collaborators of the loyalty evaluator.

LedgerStore: reads and appends the visit ledger and keeps the
    CustomerStats cache in step with it.
CustomerDirectory: customer lookup, row locking, scan-token resolution
    and cascading delete.

Neither class commits except CustomerDirectory.delete; the
LoyaltyService owns transaction boundaries for visit writes.
"""
import logging
import re
from urllib.parse import urlparse, parse_qs

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from portal.customers.models import Customer, TOKEN_PREFIX_LENGTH
from portal.loyalty.engine import PROMO_NONE, PROMO_50, PROMO_BIRTHDAY
from portal.loyalty.errors import (
    LedgerError, NotFound, InvalidInput, DuplicateTimestamp, RedemptionConflict,
)
from portal.loyalty.models import CustomerStats
from portal.visits.models import Visit

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r'^[a-z0-9]{%d}$' % TOKEN_PREFIX_LENGTH, re.IGNORECASE)


# ── Ledger ────────────────────────────────────────────────────────

class LedgerStore:
    """Visit ledger access for one SQLAlchemy session."""

    def __init__(self, session):
        self.session = session

    def list_visits(self, customer_id: str, limit: int | None = None, offset: int = 0) -> list:
        """Visits of a customer, newest first."""
        q = (self.session.query(Visit)
             .filter(Visit.customer_id == customer_id)
             .order_by(Visit.start_at.desc()))
        if offset:
            q = q.offset(offset)
        if limit is not None:
            q = q.limit(limit)
        return q.all()

    def count_visits(self, customer_id: str) -> int:
        return self.session.query(func.count(Visit.id)).filter(Visit.customer_id == customer_id).scalar() or 0

    def get_visit(self, visit_id: str, customer_id: str | None = None) -> Visit:
        q = self.session.query(Visit).filter(Visit.id == visit_id)
        if customer_id is not None:
            q = q.filter(Visit.customer_id == customer_id)
        visit = q.first()
        if visit is None:
            raise NotFound('No such visit for this customer (or it was already deleted).')
        return visit

    def count_by_kind(self, customer_id: str) -> dict:
        """{promo_kind: count} with every kind present."""
        counts = {PROMO_NONE: 0, PROMO_50: 0, PROMO_BIRTHDAY: 0}
        rows = (self.session.query(Visit.promo_kind, func.count(Visit.id))
                .filter(Visit.customer_id == customer_id)
                .group_by(Visit.promo_kind)
                .all())
        for kind, n in rows:
            counts[kind or PROMO_NONE] = counts.get(kind or PROMO_NONE, 0) + int(n)
        return counts

    def birthday_redemptions(self, customer_id: str) -> list:
        """(visit_date, redemption_slot) of every birthday visit."""
        rows = (self.session.query(Visit.start_at, Visit.redemption_slot)
                .filter(Visit.customer_id == customer_id,
                        Visit.promo_kind == PROMO_BIRTHDAY)
                .all())
        return [(start_at.date(), slot) for start_at, slot in rows]

    def has_visit_at(self, customer_id: str, start_at, exclude_visit_id: str | None = None) -> bool:
        q = self.session.query(Visit.id).filter(Visit.customer_id == customer_id,
                                                Visit.start_at == start_at)
        if exclude_visit_id is not None:
            q = q.filter(Visit.id != exclude_visit_id)
        return q.first() is not None

    def used_slots(self, customer_id: str, promo_kind: str) -> list:
        rows = (self.session.query(Visit.redemption_slot)
                .filter(Visit.customer_id == customer_id,
                        Visit.promo_kind == promo_kind,
                        Visit.redemption_slot.isnot(None))
                .all())
        return [r[0] for r in rows]

    def append_visit(self, visit: Visit) -> Visit:
        """
        INSERT the visit (flushed, not committed).

        Unique-constraint violations roll the transaction back and raise
        DuplicateTimestamp or RedemptionConflict.
        """
        self.session.add(visit)
        self.flush()
        return visit

    def flush(self) -> None:
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            mapped = _map_integrity_error(exc)
            if mapped is None:
                raise
            raise mapped from exc

    def refresh_stats(self, customer_id: str) -> CustomerStats:
        """Recompute the cached aggregates from the ledger (same transaction)."""
        total, normal, promo50, birthday, last_at = (
            self.session.query(
                func.count(Visit.id),
                func.coalesce(func.sum(case((Visit.promo_kind == PROMO_NONE, 1), else_=0)), 0),
                func.coalesce(func.sum(case((Visit.promo_kind == PROMO_50, 1), else_=0)), 0),
                func.coalesce(func.sum(case((Visit.promo_kind == PROMO_BIRTHDAY, 1), else_=0)), 0),
                func.max(Visit.start_at),
            )
            .filter(Visit.customer_id == customer_id)
            .one()
        )

        stats = self.session.get(CustomerStats, customer_id)
        if stats is None:
            stats = CustomerStats(customer_id=customer_id)
            self.session.add(stats)

        stats.total_visits    = int(total or 0)
        stats.normal_visits   = int(normal or 0)
        stats.promo50_visits  = int(promo50 or 0)
        stats.birthday_visits = int(birthday or 0)
        stats.last_visit_at   = last_at
        self.session.flush()
        return stats


def _map_integrity_error(exc: IntegrityError) -> LedgerError | None:
    # Constraint names differ per backend; the column names are in both messages
    msg = str(exc.orig)
    if "redemption_slot" in msg:
        return RedemptionConflict()
    if "start_at" in msg:
        return DuplicateTimestamp()
    return None


# ── Scan tokens ───────────────────────────────────────────────────

def extract_token_prefix(raw) -> str | None:
    """
    Scanner input may be the bare token, 't=<token>' or the full QR URL
    (.../scan?t=<token>). Returns the stripped token or None if empty.
    """
    text = str(raw or '').strip()
    if not text:
        return None
    if text.lower().startswith(('http://', 'https://')):
        values = parse_qs(urlparse(text).query).get('t')
        if values and values[0].strip():
            return values[0].strip()
    if text.startswith('t='):
        return text[2:].strip() or None
    return text


# ── Directory ─────────────────────────────────────────────────────

class CustomerDirectory:
    """Customer lookups for the evaluator and the routes."""

    def __init__(self, session):
        self.session = session

    def get(self, customer_id) -> Customer:
        cid = str(customer_id or '').strip()
        customer = self.session.get(Customer, cid) if cid else None
        if customer is None:
            raise NotFound('Customer not found.')
        return customer

    def lock(self, customer_id) -> Customer:
        """
        SELECT … FOR UPDATE on the customer row.

        Serialises concurrent visit writes for one customer on PostgreSQL;
        the lock is held until the caller commits or rolls back. SQLite
        ignores FOR UPDATE, where the redemption-slot constraint closes
        the race instead.
        """
        cid = str(customer_id or '').strip()
        customer = None
        if cid:
            customer = (self.session.query(Customer)
                        .filter(Customer.id == cid)
                        .with_for_update()
                        .first())
        if customer is None:
            raise NotFound('Customer not found.')
        return customer

    def resolve_token(self, raw) -> Customer:
        token = extract_token_prefix(raw)
        if not token or not TOKEN_RE.match(token):
            raise InvalidInput('Invalid token: expected %d letters or digits.' % TOKEN_PREFIX_LENGTH)
        customer = (self.session.query(Customer)
                    .filter(Customer.token_prefix == token.lower())
                    .first())
        if customer is None:
            raise NotFound('Token not found or customer does not exist.')
        return customer

    def delete(self, customer_id) -> tuple:
        """
        Delete the customer together with all of its visits and cached
        stats, in one transaction. Returns (deleted_customers, deleted_visits).
        """
        customer = self.get(customer_id)
        cid = customer.id
        try:
            deleted_visits = (self.session.query(Visit)
                              .filter(Visit.customer_id == cid)
                              .delete(synchronize_session='fetch'))
            (self.session.query(CustomerStats)
             .filter(CustomerStats.customer_id == cid)
             .delete(synchronize_session='fetch'))
            deleted_customers = (self.session.query(Customer)
                                 .filter(Customer.id == cid)
                                 .delete(synchronize_session='fetch'))
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Failed to delete customer %s; nothing was removed", cid)
            raise
        logger.info("Deleted customer %s with %d visit(s)", cid, deleted_visits)
        return deleted_customers, deleted_visits
