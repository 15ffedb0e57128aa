from flask import Blueprint

auth = Blueprint('auth', __name__)

from portal.auth import routes   # noqa: F401, E402
from portal.auth import models   # noqa: F401, E402  registers User with SQLAlchemy
