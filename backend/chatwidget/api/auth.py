# backend/chatwidget/api/auth.py
import secrets
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader

from .. import config

logger = structlog.get_logger(__name__)

# missing and wrong keys both answer 403
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def verify_operator(api_key: Optional[str] = Depends(api_key_header)) -> str:
    if not api_key or not any(secrets.compare_digest(api_key, key) for key in config.OPERATOR_API_KEYS):
        logger.info("Rejected operator request", has_key=bool(api_key))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key"
        )
    return api_key
