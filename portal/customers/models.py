import uuid
from datetime import datetime
from portal import db


TOKEN_PREFIX_LENGTH = 10


def new_customer_id() -> str:
    return str(uuid.uuid4())


def token_prefix_for(customer_id: str) -> str:
    """Scan token printed in the customer's QR: first 10 hex chars of the id."""
    return customer_id.replace('-', '')[:TOKEN_PREFIX_LENGTH].lower()


class Customer(db.Model):
    """
    A barbershop customer.

    Loyalty balances are NOT stored here: they are always recomputed from
    the visit ledger (see portal.loyalty).
    """
    __tablename__ = 'customers'

    id           = db.Column(db.String(36), primary_key=True, default=new_customer_id)
    full_name    = db.Column(db.String(150), nullable=True, index=True)
    phone_norm   = db.Column(db.String(10), nullable=True, index=True)   # exactly 10 digits or NULL
    birthdate    = db.Column(db.Date, nullable=True)
    token_prefix = db.Column(db.String(TOKEN_PREFIX_LENGTH), unique=True, nullable=False, index=True)
    row_color    = db.Column(db.String(7), nullable=True)                # '#rrggbb' highlight in the admin list
    status       = db.Column(db.String(20), nullable=False, default='active')
    created_at   = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    visits = db.relationship('Visit', backref='customer', lazy='dynamic',
                             passive_deletes=True)
    stats  = db.relationship('CustomerStats', uselist=False, lazy='select',
                             passive_deletes=True)

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if not self.id:
            self.id = new_customer_id()
        if not self.token_prefix:
            self.token_prefix = token_prefix_for(self.id)

    def to_dict(self) -> dict:
        return {
            'customer_id':  self.id,
            'full_name':    self.full_name,
            'phone_norm':   self.phone_norm,
            'birthdate':    self.birthdate.isoformat() if self.birthdate else None,
            'token_prefix': self.token_prefix,
            'row_color':    self.row_color,
            'status':       self.status,
        }

    def __repr__(self):
        return f"<Customer {self.full_name!r} token={self.token_prefix}>"
