from flask import Blueprint

bp = Blueprint("digest", __name__)

from . import routes  # noqa: E402,F401
