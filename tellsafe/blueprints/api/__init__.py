from flask import Blueprint

bp = Blueprint("api", __name__)

from . import responses  # noqa: E402,F401
