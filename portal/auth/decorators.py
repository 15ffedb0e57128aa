"""
portal/auth/decorators.py
-------------------------
Reusable route-protection decorators for the JSON API.
Usage:
    from portal.auth.decorators import login_required, admin_required

    @scanner.route('/redeem', methods=['POST'])
    @login_required
    def redeem():
        ...

    @customers.route('/<customer_id>', methods=['DELETE'])
    @admin_required
    def delete_customer(customer_id):
        ...
"""
from functools import wraps
from flask import session, abort


STAFF_ROLES = ('admin', 'barber')


def login_required(f):
    """
    Any logged-in staff member (admin or barber).
    Anonymous callers get 401.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session or session.get('role') not in STAFF_ROLES:
            abort(401)
        return f(*args, **kwargs)
    return decorated


def admin_required(f):
    """
    Allow access only to users with role == 'admin'.
    Anonymous callers get 401, authenticated barbers get 403.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        if 'user_id' not in session:
            abort(401)
        if session.get('role') != 'admin':
            abort(403)
        return f(*args, **kwargs)
    return decorated
