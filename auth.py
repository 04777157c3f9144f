from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthorized


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="ledger-session")


def issue_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def current_user_id(token: str) -> int:
    """Resolve a bearer token to the id of the user it was issued for."""
    if not token:
        raise Unauthorized("Missing credentials")
    settings = get_settings()
    try:
        data = _serializer().loads(token, max_age=settings.session_max_age_hours * 3600)
    except SignatureExpired as exc:
        raise Unauthorized("Session expired") from exc
    except BadSignature as exc:
        raise Unauthorized("Invalid credentials") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        raise Unauthorized("Invalid credentials")
    return user_id
