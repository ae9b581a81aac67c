"""
Request identity

Authentication happens upstream: the API gateway verifies the session and forwards
the authenticated user id in ``X-User-Id``. The booking engine only trusts that header.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException

logger = logging.getLogger(__name__)


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        logger.warning("🚫 Request without X-User-Id header")
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id.strip()
