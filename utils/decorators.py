#!/usr/bin/env python3
"""
API Decorators
Provides the bearer-token guard for cron trigger endpoints
"""

import logging
from functools import wraps
from typing import Callable

from fastapi.responses import JSONResponse

import config
from services.errors import PollJobError, Unauthorized
from utils.timing import now_ms

logger = logging.getLogger(__name__)


def cron_job(endpoint: str, description: str):
    """
    Decorator for cron trigger endpoints

    The decorated endpoint must accept an ``authorization`` keyword (the
    Authorization header).

    - no header: endpoint metadata, the job does not run
    - wrong bearer token while CRON_SECRET is set: 401
    - otherwise the job runs; PollJobError becomes its JSON error payload

    Args:
        endpoint: Path reported in the metadata response
        description: Human readable job description

    Returns:
        Decorated function
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            authorization = kwargs.get('authorization')
            secret = config.CRON_SECRET

            if not authorization:
                return {
                    "endpoint": endpoint,
                    "method": "GET (with auth)",
                    "description": description,
                    "protected": bool(secret),
                }

            if secret and authorization != f"Bearer {secret}":
                logger.warning(f"Rejected unauthorized call to {endpoint}")
                error = Unauthorized("Invalid bearer token")
                return JSONResponse(status_code=error.status, content=error.to_payload(now_ms()))

            try:
                return func(*args, **kwargs)
            except PollJobError as e:
                return JSONResponse(status_code=e.status, content=e.to_payload(now_ms()))

        return wrapper
    return decorator
