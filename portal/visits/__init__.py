"""
portal/visits/__init__.py
-------------------------
Visit history blueprint. Mounted under /customers so every visit URL
carries its customer id: /customers/<customer_id>/visits/...
"""
from flask import Blueprint

visits = Blueprint('visits', __name__)

from portal.visits import routes  # noqa: E402, F401
