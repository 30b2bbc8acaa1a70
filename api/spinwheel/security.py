import bcrypt, secrets
from datetime import datetime, timedelta, timezone
from fastapi import Header, HTTPException, status
from jose import jwt, JWTError
from .config import settings

ALGO = "HS256"

def verify_admin_password(plaintext: str) -> bool:
    # Prefer secure hash if provided
    if settings.admin_password_hash:
        try:
            return bcrypt.checkpw(
                plaintext.encode("utf-8"),
                settings.admin_password_hash.encode("utf-8"),
            )
        except ValueError:
            return False
    # Fallback: compare to plaintext env
    if settings.admin_password:
        return secrets.compare_digest(plaintext, settings.admin_password)
    return False

def make_admin_token() -> str:
    exp = datetime.now(timezone.utc) + timedelta(hours=settings.admin_token_hours)
    return jwt.encode({"sub": "admin", "role": "admin", "exp": exp}, settings.jwt_secret, algorithm=ALGO)

def make_user_token(user_id: int, username: str) -> str:
    exp = datetime.now(timezone.utc) + timedelta(hours=settings.user_token_hours)
    payload = {"sub": str(user_id), "username": username, "role": "user", "exp": exp}
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def decode_token(token: str | None, role: str) -> dict | None:
    """Claims of a valid token carrying ``role``, else None."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGO])
    except JWTError:
        return None
    if payload.get("role") != role:
        return None
    return payload

def _bearer(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return authorization.split(" ", 1)[1].strip()

def require_admin(authorization: str | None = Header(default=None, alias="Authorization")):
    token = _bearer(authorization)
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[ALGO])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if payload.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized: Admin access required")
    return True

def require_user(authorization: str | None = Header(default=None, alias="Authorization")) -> dict:
    payload = decode_token(_bearer(authorization), "user")
    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return payload
