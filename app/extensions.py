"""
Flask extensions initialization.
Extensions are initialized here and bound to the app in the factory.
"""
from flask_sqlalchemy import SQLAlchemy
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from app.services.pending_associations import PendingAssociations

# Database
db = SQLAlchemy()

# Rate Limiting
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=['100 per minute']
)

# Checkout/subscription event correlation
pending_associations = PendingAssociations()


def init_extensions(app):
    """Initialize all extensions with the Flask app."""
    db.init_app(app)
    limiter.init_app(app)
    pending_associations.init_app(app)
