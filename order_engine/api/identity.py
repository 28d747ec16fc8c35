from typing import Optional

import jwt
from fastapi import Depends, Header

from order_engine.application.errors import Unauthenticated
from order_engine.core.logging_config import get_logger, set_request_context
from order_engine.core_settings import get_settings

logger = get_logger(__name__)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.PyJWTError as e:
        logger.debug(f"Ignoring invalid bearer token: {e}")
        return None


async def current_actor_id(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    """Subject of the bearer token, or None for anonymous callers."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    payload = decode_access_token(authorization.split(" ", 1)[1].strip())
    if not payload or payload.get("sub") is None:
        return None
    actor_id = str(payload["sub"])
    set_request_context(actor_id=actor_id)
    return actor_id


async def current_customer_id(actor_id: Optional[str] = Depends(current_actor_id)) -> int:
    """Numeric customer id of the caller; storefront endpoints refuse anonymous callers."""
    if actor_id is None or not actor_id.isdigit():
        raise Unauthenticated()
    return int(actor_id)
