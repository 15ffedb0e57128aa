"""
portal/customers/__init__.py
----------------------------
Customer directory blueprint (admin list, create / edit / delete).
URL prefix: /customers
"""
from flask import Blueprint

customers = Blueprint('customers', __name__)

from portal.customers import routes  # noqa: E402, F401
