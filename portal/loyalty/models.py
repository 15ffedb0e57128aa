from datetime import datetime
from portal import db


class CustomerStats(db.Model):
    """
    Cached per-customer visit aggregates for the admin list
    (sorting by visits / redemptions / last visit, star filter).

    Written only by LedgerStore.refresh_stats, inside the same transaction
    as the visit change that made it stale, so it never lags the ledger.
    Birthday eligibility depends on "today" and is never cached.
    """
    __tablename__ = 'customer_stats'

    customer_id    = db.Column(db.String(36), db.ForeignKey('customers.id', ondelete='CASCADE'),
                               primary_key=True)
    total_visits   = db.Column(db.Integer, nullable=False, default=0)
    normal_visits  = db.Column(db.Integer, nullable=False, default=0)
    promo50_visits = db.Column(db.Integer, nullable=False, default=0)   # "promo_50_ok_cycles" in the list API
    birthday_visits = db.Column(db.Integer, nullable=False, default=0)
    last_visit_at  = db.Column(db.DateTime, nullable=True)
    updated_at     = db.Column(db.DateTime, nullable=False, default=datetime.utcnow,
                               onupdate=datetime.utcnow)

    def __repr__(self):
        return (f"<CustomerStats {self.customer_id} total={self.total_visits} "
                f"normal={self.normal_visits} promo50={self.promo50_visits}>")
