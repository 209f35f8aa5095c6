from flask import current_app
from flask_login import UserMixin
from sqlalchemy import func
from subsync.extensions import db, login_manager
from subsync.services import tokens
from subsync.utils.helpers import utcnow

class User(db.Model, UserMixin):
    __tablename__ = "users"

    # Opaque id issued by the auth provider
    id = db.Column(db.String(64), primary_key=True)
    email = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    def get_id(self) -> str:
        return str(self.id)

def bearer_token(header_value):
    """Extract the token from an ``Authorization: Bearer <token>`` header value."""
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()

@login_manager.request_loader
def load_user_from_request(request):
    token = bearer_token(request.headers.get("Authorization"))
    if not token:
        return None
    user_id = tokens.verify_session_token(token, max_age_seconds=current_app.config.get("SESSION_TOKEN_MAX_AGE"))
    if not user_id:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user
