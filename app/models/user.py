"""
User model.
Users are owned by the main application; the webhook service only reads them
to resolve who a checkout belongs to.
"""
import uuid
from datetime import datetime

from sqlalchemy import func

from app.extensions import db


def _new_user_id():
    return str(uuid.uuid4())


class User(db.Model):
    """Application user, keyed by a UUID string."""

    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=_new_user_id)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    full_name = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f'<User {self.email}>'

    @classmethod
    def find_by_email(cls, email):
        """Case-insensitive exact match on email. Returns None if not found."""
        if not email:
            return None
        return cls.query.filter(func.lower(cls.email) == email.strip().lower()).first()

    @classmethod
    def exists(cls, user_id):
        """Check whether a user with this id is present."""
        if not user_id:
            return False
        return db.session.get(cls, user_id) is not None
