from typing import Optional
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from flask import current_app

def _serializer() -> URLSafeTimedSerializer:
    secret = current_app.config["SECRET_KEY"]
    salt = current_app.config.get("SESSION_TOKEN_SALT", "session-token-v1")
    return URLSafeTimedSerializer(secret_key=secret, salt=salt)

def issue_session_token(user_id: str) -> str:
    """Bearer token identifying a user; signed with SECRET_KEY."""
    return _serializer().dumps({"k": "session", "u": str(user_id)})

def verify_session_token(token: str, max_age_seconds: Optional[int] = None) -> Optional[str]:
    """Return the user id for a valid, unexpired token; None otherwise."""
    try:
        data = _serializer().loads(token, max_age=max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None
    if not isinstance(data, dict) or data.get("k") != "session":
        return None
    return data.get("u") or None
