"""
portal/loyalty/engine.py
------------------------
Pure-Python loyalty rule.

Turns a customer's visit counts and birthday redemptions into a
LoyaltyState: how many repeat-visit credits ("stars") are available,
progress toward the next one, and whether a birthday reward can be
redeemed today.

No DB access happens here. LedgerStore gathers the inputs and the
LoyaltyService (or the customer list) decides how to act on the result,
so every call site shares exactly one formula.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Optional, Tuple


VISITS_PER_CREDIT = 4

PROMO_NONE     = 'none'
PROMO_50       = 'promo50'
PROMO_BIRTHDAY = 'birthday'
PROMO_KINDS    = (PROMO_NONE, PROMO_50, PROMO_BIRTHDAY)


@dataclass(frozen=True)
class LoyaltyState:
    """Derived loyalty balance of one customer. Never stored."""
    credits_available:       int
    progress:                int
    birthday_eligible_today: bool
    normal_count:            int = 0
    redeemed_count:          int = 0

    def as_flags(self) -> dict:
        """Caller-facing shape used by the list, the scanner and the visit modal."""
        return {
            'discount_credits':        self.credits_available,
            'discount_progress':       self.progress,
            'discount_pending':        self.credits_available > 0,
            'birthday_eligible_today': self.birthday_eligible_today,
        }


# ── Repeat-visit credits ──────────────────────────────────────────

def credits_available(normal_count: int, redeemed_count: int) -> int:
    """
    One credit per VISITS_PER_CREDIT ordinary visits, minus redeemed ones.
    Clamped at zero: imported histories may hold more redemptions than
    formally earned.
    """
    earned = max(0, int(normal_count or 0)) // VISITS_PER_CREDIT
    return max(0, earned - max(0, int(redeemed_count or 0)))


def progress(normal_count: int) -> int:
    """Ordinary visits since the last multiple of VISITS_PER_CREDIT (0..3)."""
    return max(0, int(normal_count or 0)) % VISITS_PER_CREDIT


def next_redemption_slot(used_slots: Iterable[Optional[int]]) -> int:
    """
    Smallest positive slot number not already taken by a promo50 visit.

    Slots back the (customer, promo_kind, slot) unique constraint: two
    concurrent redemptions of the same credit compute the same slot and
    the second INSERT fails instead of double-spending.
    """
    taken = {int(s) for s in used_slots if s is not None}
    slot = 1
    while slot in taken:
        slot += 1
    return slot


# ── Birthday window ───────────────────────────────────────────────

def anniversary(birthdate: date, year: int) -> date:
    """Birthday in `year`. 29 February falls on 28 February in common years."""
    try:
        return birthdate.replace(year=year)
    except ValueError:
        return date(year, 2, 28)


@dataclass(frozen=True)
class WindowOccurrence:
    """One yearly instance of a customer's birthday window."""
    start:       date
    end:         date
    anchor_year: int   # year of the anniversary the window is built around

    def covers(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class BirthdayWindow:
    """Redemption window policy: N days before / after the anniversary."""
    days_before: int = 0
    days_after:  int = 6

    def __post_init__(self):
        if self.days_before < 0 or self.days_after < 0:
            raise ValueError('Birthday window offsets must be non-negative.')
        if self.days_before + self.days_after >= 365:
            raise ValueError('Birthday window must be shorter than a year.')

    def occurrence(self, birthdate: Optional[date], today: date) -> Optional[WindowOccurrence]:
        """The window instance containing `today`, or None."""
        if birthdate is None:
            return None
        # A window may straddle New Year, so the anniversary can be in
        # the previous or next calendar year relative to `today`.
        for year in (today.year - 1, today.year, today.year + 1):
            anchor = anniversary(birthdate, year)
            occ = WindowOccurrence(
                start=anchor - timedelta(days=self.days_before),
                end=anchor + timedelta(days=self.days_after),
                anchor_year=year,
            )
            if occ.covers(today):
                return occ
        return None

    def contains(self, birthdate: Optional[date], today: date) -> bool:
        return self.occurrence(birthdate, today) is not None


def birthday_eligible(
    birthdate: Optional[date],
    today: date,
    window: BirthdayWindow,
    redemptions: Iterable[Tuple[date, Optional[int]]] = (),
) -> bool:
    """
    True when `today` is inside a window occurrence and no birthday visit
    already belongs to that occurrence.

    `redemptions` holds (visit_date, redemption_slot) for every birthday
    visit. A visit belongs to the occurrence when its date lies inside it
    or its slot is the occurrence's anchor year (manual entries may carry
    a back-dated timestamp).
    """
    occ = window.occurrence(birthdate, today)
    if occ is None:
        return False
    for visit_date, slot in redemptions:
        if occ.covers(visit_date) or slot == occ.anchor_year:
            return False
    return True


def birthday_slot(birthdate: Optional[date], day: date, window: BirthdayWindow) -> int:
    """Slot recorded on a birthday visit: the anchor year of its occurrence."""
    occ = window.occurrence(birthdate, day)
    return occ.anchor_year if occ else day.year


# ── Main public function ──────────────────────────────────────────

def compute_state(
    normal_count: int,
    redeemed_count: int,
    birthdate: Optional[date],
    today: date,
    window: BirthdayWindow,
    birthday_redemptions: Iterable[Tuple[date, Optional[int]]] = (),
) -> LoyaltyState:
    """
    Evaluate the loyalty rule. Order of visits does not matter; only the
    multiset of promo kinds and the birthday redemption dates do.
    """
    normal_count   = max(0, int(normal_count or 0))
    redeemed_count = max(0, int(redeemed_count or 0))
    return LoyaltyState(
        credits_available=credits_available(normal_count, redeemed_count),
        progress=progress(normal_count),
        birthday_eligible_today=birthday_eligible(birthdate, today, window, birthday_redemptions),
        normal_count=normal_count,
        redeemed_count=redeemed_count,
    )
