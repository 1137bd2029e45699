from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings


class IdentityError(ValueError):
    pass


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.identity_secret, salt="ledger-identity")


def issue_token(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def resolve_user_id(token: str) -> int:
    """Resolve an opaque caller token to the stable user id the engine uses."""
    settings = get_settings()
    try:
        data = _serializer().loads(
            token, max_age=settings.token_max_age_hours * 3600
        )
    except SignatureExpired as exc:
        raise IdentityError("Token expired") from exc
    except BadSignature as exc:
        raise IdentityError("Invalid token") from exc

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise IdentityError("Invalid token")
    return user_id
