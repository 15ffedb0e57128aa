"""
portal/scanner/__init__.py
--------------------------
QR scanner blueprint used by barbers.
URL prefix: /scanner
"""
from flask import Blueprint

scanner = Blueprint('scanner', __name__)

from portal.scanner import routes  # noqa: E402, F401
