import os
from typing import Dict, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.config import cfg
from core.events import log_event, E
from core.log import get_logger

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _secret() -> str:
    return str(cfg.get("auth.secret", os.getenv("AUTH_SECRET", "")) or "")


def _algorithms():
    value = cfg.get("auth.algorithms", ["HS256"])
    if isinstance(value, str):
        value = [x.strip() for x in value.split(",") if x.strip()]
    return value or ["HS256"]


def decode_id_token(token: str) -> Dict[str, str]:
    """校验身份令牌，返回 {"uid", "email"}；令牌无效时抛出 jwt.InvalidTokenError。"""
    secret = _secret()
    if not secret:
        raise jwt.InvalidTokenError("auth secret is not configured")
    audience = cfg.get("auth.audience", None) or None
    options = {} if audience else {"verify_aud": False}
    payload = jwt.decode(token, secret, algorithms=_algorithms(), audience=audience, options=options)
    uid = str(payload.get("uid") or payload.get("sub") or "").strip()
    if not uid:
        raise jwt.InvalidTokenError("token has no subject")
    return {"uid": uid, "email": str(payload.get("email") or "").strip()}


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Dict[str, str]:
    if credentials is None or not credentials.credentials:
        log_event(logger, E.AUTH_TOKEN_MISSING, level="warning")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")
    try:
        return decode_id_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        log_event(logger, E.AUTH_TOKEN_INVALID, level="warning", error=e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
