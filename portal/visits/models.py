"""
portal/visits/models.py
-----------------------
The visit ledger. Every loyalty balance is derived from these rows.

promo_kind and customer_id never change after insert: edits only touch
start_at and notes, so a visit always keeps the reward it consumed.
"""
import uuid
from datetime import datetime
from portal import db
from portal.loyalty.engine import PROMO_NONE


SOURCE_MANUAL = 'manual'
SOURCE_QR     = 'qr'
SOURCE_IMPORT = 'import'
SOURCES       = (SOURCE_MANUAL, SOURCE_QR, SOURCE_IMPORT)


class Visit(db.Model):
    """One haircut / service visit."""
    __tablename__ = 'visits'
    __table_args__ = (
        # One visit per customer per second: blocks accidental double entries
        db.UniqueConstraint('customer_id', 'start_at', name='uq_visits_customer_start'),
        # Each credit / birthday occurrence can be consumed once (NULLs never collide)
        db.UniqueConstraint('customer_id', 'promo_kind', 'redemption_slot',
                            name='uq_visits_redemption_slot'),
        db.CheckConstraint(
            "promo_kind IN ('none', 'promo50', 'birthday')", name='ck_visits_promo_kind'
        ),
    )

    id              = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id     = db.Column(db.String(36), db.ForeignKey('customers.id', ondelete='CASCADE'),
                                nullable=False, index=True)
    start_at        = db.Column(db.DateTime, nullable=False)        # naive UTC, whole seconds
    promo_kind      = db.Column(db.String(10), nullable=False, default=PROMO_NONE)
    redemption_slot = db.Column(db.Integer, nullable=True)          # see loyalty.engine.next_redemption_slot
    visit_kind      = db.Column(db.String(20), nullable=False, default='corte')
    source          = db.Column(db.String(10), nullable=False, default=SOURCE_MANUAL)
    notes           = db.Column(db.Text, nullable=True)
    staff_user_id   = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)  # NULL for imports
    created_at      = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relationship
    staff = db.relationship('User', lazy='select')

    @property
    def added_by(self):
        """Name of the staff member who recorded the visit (None for imports)."""
        if self.source == SOURCE_IMPORT or self.staff is None:
            return None
        return self.staff.name

    def to_dict(self) -> dict:
        return {
            'id':          self.id,
            'customer_id': self.customer_id,
            'start_at':    self.start_at.isoformat() + 'Z',
            'promo_kind':  self.promo_kind or PROMO_NONE,
            'source':      self.source,
            'notes':       self.notes,
            'added_by':    self.added_by,
        }

    def __repr__(self):
        return f"<Visit {self.customer_id} {self.start_at:%Y-%m-%d %H:%M:%S} {self.promo_kind}>"


