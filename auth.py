import hmac
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Header, HTTPException
from jose import jwt, JWTError

import config

ALGORITHM = "HS256"
DOWNLOAD_TOKEN_PURPOSE = "local-download"


def create_download_token(key: str, ttl_seconds: int, download_name: Optional[str] = None) -> str:
    """
    Signs a short-lived token naming one local-tier storage key.
    The key never leaves the server in clear text form other than inside the signed claim.
    """
    expire = datetime.utcnow() + timedelta(seconds=ttl_seconds)
    claims = {"sub": key, "purpose": DOWNLOAD_TOKEN_PURPOSE, "exp": expire, "iat": datetime.utcnow()}
    if download_name:
        claims["name"] = download_name
    return jwt.encode(claims, config.SECRET_KEY, algorithm=ALGORITHM)


def decode_download_token(token: str) -> dict:
    """Decode and validate a download token. Raises JWTError on failure."""
    payload = jwt.decode(token, config.SECRET_KEY, algorithms=[ALGORITHM])
    if payload.get("purpose") != DOWNLOAD_TOKEN_PURPOSE or not payload.get("sub"):
        raise JWTError("Not a download token")
    return payload


def local_url_signer(key: str, ttl: int, download_name: Optional[str] = None) -> str:
    return f"/download/local?token={create_download_token(key, ttl, download_name)}"


def require_admin(x_admin_token: str = Header(None)):
    if not config.ADMIN_API_TOKEN or not x_admin_token or not hmac.compare_digest(
        x_admin_token, config.ADMIN_API_TOKEN
    ):
        raise HTTPException(status_code=403, detail="Admin access required")
    return True
