from jose import JWTError, jwt
from settlement.config.env import JWT_SECRET, JWT_ALGORITHM

# Tokens are issued by the auth service; this service only verifies them.

def _require_jwt_secret() -> str:
    secret = (JWT_SECRET or "").strip()
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret

def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, _require_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
