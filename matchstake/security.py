import hmac

from fastapi import Header, HTTPException

from matchstake.config import settings


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency guarding operator routes with Authorization: Bearer <token>.

    Open when no bearer_token is configured.
    """
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, settings.bearer_token):
        raise HTTPException(status_code=401, detail="Unauthorized")
