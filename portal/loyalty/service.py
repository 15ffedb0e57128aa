"""
portal/loyalty/service.py
-------------------------
LoyaltyService: the one place that evaluates loyalty balances and decides
whether a visit may be recorded.

Every entry point (customer list, scanner, manual registration, import)
goes through here or through engine.compute_state, so the stars and the
birthday flag shown to staff always match what registration enforces.

Write discipline
────────────────
register_visit / update_visit / delete_visit each run as one transaction:

    1. lock the customer row              (SELECT … FOR UPDATE)
    2. re-evaluate from the live ledger   (never from a cached value)
    3. check the preconditions
    4. INSERT / UPDATE / DELETE the visit
    5. refresh CustomerStats              (same transaction, not best-effort)
    6. COMMIT

Two barbers redeeming the last credit at the same moment: on PostgreSQL
the second request blocks at step 1 and then sees zero credits at step 3.
On any backend the (customer, promo_kind, redemption_slot) unique
constraint makes the loser's INSERT fail at step 4. The loser is then
re-evaluated: with the reward gone it gets InsufficientCredit / NotEligible;
with a credit still left it runs steps 1-6 once more in a fresh transaction
and only reports RedemptionConflict if that attempt loses too.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from flask import current_app

from portal.loyalty.engine import (
    BirthdayWindow, LoyaltyState, PROMO_NONE, PROMO_50, PROMO_BIRTHDAY,
    birthday_slot, compute_state, next_redemption_slot,
)
from portal.loyalty.errors import (
    LedgerError, DuplicateTimestamp, InsufficientCredit, NotEligible, RedemptionConflict,
)
from portal.loyalty.ledger import CustomerDirectory, LedgerStore
from portal.visits.models import Visit, SOURCE_MANUAL
from portal.visits.validators import parse_start_at, parse_promo_kind, parse_source

logger = logging.getLogger(__name__)

CLOCK_EXTENSION = 'portal.clock'

# Extra attempts after losing a redemption slot to a concurrent request
REDEMPTION_RETRIES = 1

_UNSET = object()


# ── Clocks ────────────────────────────────────────────────────────

class SystemClock:
    """Wall clock. Visits are stored in naive UTC, so "today" is the UTC date."""

    def now(self) -> datetime:
        return datetime.utcnow().replace(microsecond=0)

    def today(self) -> date:
        return self.now().date()


class FixedClock:
    """Clock pinned to a given instant; used by tests and backfills."""

    def __init__(self, when):
        if not isinstance(when, datetime):
            when = datetime.combine(when, time(12, 0))
        self._now = when.replace(microsecond=0)

    def now(self) -> datetime:
        return self._now

    def today(self) -> date:
        return self._now.date()

    def advance(self, **kwargs) -> None:
        self._now = self._now + timedelta(**kwargs)


# ── Results ───────────────────────────────────────────────────────

@dataclass
class RegisterResult:
    """Outcome of an authorized registration (or dry run)."""
    authorized: LoyaltyState          # state the request was checked against
    visit:      Optional[Visit] = None
    state:      Optional[LoyaltyState] = None   # state after the insert

    @property
    def dry_run(self) -> bool:
        return self.visit is None


# ── Service ───────────────────────────────────────────────────────

class LoyaltyService:

    def __init__(self, session, clock=None, window: BirthdayWindow | None = None):
        self.session   = session
        self.clock     = clock or SystemClock()
        self.window    = window or BirthdayWindow()
        self.ledger    = LedgerStore(session)
        self.directory = CustomerDirectory(session)

    # ── Evaluation (read-only) ────────────────────────────────────

    def evaluate(self, customer_id) -> LoyaltyState:
        """Loyalty state of a customer from the live ledger. No side effects."""
        customer = self.directory.get(customer_id)
        return self._evaluate_customer(customer)

    def _evaluate_customer(self, customer) -> LoyaltyState:
        counts = self.ledger.count_by_kind(customer.id)
        return compute_state(
            normal_count=counts[PROMO_NONE],
            redeemed_count=counts[PROMO_50],
            birthdate=customer.birthdate,
            today=self.clock.today(),
            window=self.window,
            birthday_redemptions=self.ledger.birthday_redemptions(customer.id),
        )

    def state_from_stats(self, customer, stats) -> LoyaltyState:
        """
        Same rule as evaluate(), fed from the CustomerStats cache.
        Birthday redemptions are only looked up for customers whose window
        is open today.
        """
        today = self.clock.today()
        redemptions = ()
        if self.window.contains(customer.birthdate, today):
            redemptions = self.ledger.birthday_redemptions(customer.id)
        return compute_state(
            normal_count=stats.normal_visits if stats else 0,
            redeemed_count=stats.promo50_visits if stats else 0,
            birthdate=customer.birthdate,
            today=today,
            window=self.window,
            birthday_redemptions=redemptions,
        )

    # ── Authorization (read-only) ─────────────────────────────────

    def authorize_visit(self, customer_id, promo_kind, start_at) -> LoyaltyState:
        """
        Check whether a visit may be recorded. Raises, in order:
          InvalidInput        bad timestamp / promo kind
          NotFound            unknown customer
          DuplicateTimestamp  the customer already has a visit at start_at
          InsufficientCredit  promo50 with no credit
          NotEligible         birthday outside the window / already redeemed
        Returns the LoyaltyState the decision was based on.
        """
        start_at   = parse_start_at(start_at)
        promo_kind = parse_promo_kind(promo_kind)
        customer   = self.directory.get(customer_id)
        return self._authorize(customer, promo_kind, start_at)

    def _authorize(self, customer, promo_kind: str, start_at: datetime) -> LoyaltyState:
        if self.ledger.has_visit_at(customer.id, start_at):
            raise DuplicateTimestamp()

        state = self._evaluate_customer(customer)

        if promo_kind == PROMO_50 and state.credits_available <= 0:
            raise InsufficientCredit()
        if promo_kind == PROMO_BIRTHDAY and not state.birthday_eligible_today:
            raise NotEligible()
        return state

    def _redemption_slot(self, customer, promo_kind: str) -> Optional[int]:
        if promo_kind == PROMO_50:
            return next_redemption_slot(self.ledger.used_slots(customer.id, PROMO_50))
        if promo_kind == PROMO_BIRTHDAY:
            return birthday_slot(customer.birthdate, self.clock.today(), self.window)
        return None

    # ── Writes ────────────────────────────────────────────────────

    def register_visit(self, customer_id, promo_kind=None, start_at=None, *,
                       notes: str | None = None, staff_user_id: int | None = None,
                       source: str = SOURCE_MANUAL, dry_run: bool = False) -> RegisterResult:
        """
        Authorize and record a visit in one transaction (see module docstring).
        start_at defaults to the clock's current time. dry_run only authorizes.
        """
        start_at   = self.clock.now() if start_at in (None, '') else parse_start_at(start_at)
        promo_kind = parse_promo_kind(promo_kind)
        source     = parse_source(source, SOURCE_MANUAL)

        for attempt in range(1 + REDEMPTION_RETRIES):
            try:
                return self._register_once(customer_id, promo_kind, start_at, notes=notes,
                                           staff_user_id=staff_user_id, source=source,
                                           dry_run=dry_run)
            except RedemptionConflict as conflict:
                # append_visit already rolled back; another request won the slot
                logger.warning("Concurrent redemption lost for customer %s (%s), attempt %d",
                               customer_id, promo_kind, attempt + 1)
                rejection = self._lost_redemption_error(customer_id, promo_kind)
                if rejection is None and attempt < REDEMPTION_RETRIES:
                    continue
                rejection = rejection or conflict
            except LedgerError as e:
                self.session.rollback()
                rejection = e

            logger.info("Visit rejected for customer %s (%s): %s",
                        customer_id, rejection.code, rejection.message)
            raise rejection

    def _register_once(self, customer_id, promo_kind: str, start_at: datetime, *,
                       notes, staff_user_id, source: str, dry_run: bool) -> RegisterResult:
        customer   = self.directory.lock(customer_id)
        # Read the slot before the credit check: a rival commit landing in
        # between then collides on the slot instead of going unnoticed
        slot       = self._redemption_slot(customer, promo_kind)
        authorized = self._authorize(customer, promo_kind, start_at)
        if dry_run:
            self.session.rollback()
            return RegisterResult(authorized=authorized)

        visit = Visit(
            customer_id=customer.id,
            start_at=start_at,
            promo_kind=promo_kind,
            redemption_slot=slot,
            source=source,
            notes=notes,
            staff_user_id=staff_user_id,
        )
        self.ledger.append_visit(visit)
        self.ledger.refresh_stats(customer.id)
        self.session.commit()

        logger.info("Visit %s registered for customer %s: promo=%s source=%s staff=%s",
                    visit.id, visit.customer_id, promo_kind, source, staff_user_id)
        return RegisterResult(authorized=authorized, visit=visit,
                              state=self._evaluate_customer(customer))

    def _lost_redemption_error(self, customer_id, promo_kind: str) -> Optional[LedgerError]:
        """Rejection owed after losing a slot race, or None while the reward is still there."""
        try:
            state = self.evaluate(customer_id)
        except LedgerError as e:
            return e
        if promo_kind == PROMO_50 and state.credits_available <= 0:
            return InsufficientCredit()
        if promo_kind == PROMO_BIRTHDAY and not state.birthday_eligible_today:
            return NotEligible()
        return None

    def update_visit(self, visit_id, customer_id=None, *, start_at=_UNSET, notes=_UNSET) -> Visit:
        """
        Edit a visit's timestamp and/or notes. promo_kind and customer are
        immutable, so the edit never changes which reward was consumed.
        """
        if start_at is not _UNSET:
            start_at = parse_start_at(start_at)

        try:
            visit = self.ledger.get_visit(visit_id, customer_id)
            self.directory.lock(visit.customer_id)

            if start_at is not _UNSET and start_at != visit.start_at:
                if self.ledger.has_visit_at(visit.customer_id, start_at, exclude_visit_id=visit.id):
                    raise DuplicateTimestamp()
                visit.start_at = start_at
            if notes is not _UNSET:
                visit.notes = notes

            self.ledger.flush()
            self.ledger.refresh_stats(visit.customer_id)
            self.session.commit()
        except LedgerError:
            self.session.rollback()
            raise

        logger.info("Visit %s updated (customer %s)", visit.id, visit.customer_id)
        return visit

    def delete_visit(self, visit_id, customer_id) -> None:
        """Delete a visit; both ids must match so one customer's row is never hit by mistake."""
        try:
            visit = self.ledger.get_visit(visit_id, customer_id)
            self.directory.lock(visit.customer_id)
            self.session.delete(visit)
            self.ledger.flush()
            self.ledger.refresh_stats(customer_id)
            self.session.commit()
        except LedgerError:
            self.session.rollback()
            raise
        logger.info("Visit %s deleted (customer %s)", visit_id, customer_id)

    def delete_customer(self, customer_id) -> tuple:
        return self.directory.delete(customer_id)

    def rebuild_stats(self) -> int:
        """Recompute CustomerStats for every customer. Returns the count."""
        from portal.customers.models import Customer

        ids = [cid for (cid,) in self.session.query(Customer.id).all()]
        for cid in ids:
            self.ledger.refresh_stats(cid)
        self.session.commit()
        logger.info("Rebuilt loyalty stats for %d customer(s)", len(ids))
        return len(ids)


def loyalty_service(session=None) -> LoyaltyService:
    """LoyaltyService wired from the current app's config and clock."""
    from portal import db

    app = current_app
    window = BirthdayWindow(
        days_before=app.config['BIRTHDAY_WINDOW_DAYS_BEFORE'],
        days_after=app.config['BIRTHDAY_WINDOW_DAYS_AFTER'],
    )
    clock = app.extensions.get(CLOCK_EXTENSION) or SystemClock()
    return LoyaltyService(session if session is not None else db.session, clock=clock, window=window)
