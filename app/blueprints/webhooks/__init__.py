"""Webhooks blueprint - Stripe subscription event receiver."""
from flask import Blueprint

webhooks_bp = Blueprint('webhooks', __name__)

from app.blueprints.webhooks import routes  # noqa: F401, E402
