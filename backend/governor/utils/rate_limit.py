# backend/governor/utils/rate_limit.py
"""
Rate limits for the control API (slowapi).

Training and scenario endpoints spend real money, so they get the tightest
limit. Limits can be turned off with RATE_LIMIT_ENABLED=0 (tests do this).
"""

import os
from typing import Callable

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(
    key_func=get_remote_address,
    enabled=os.getenv("RATE_LIMIT_ENABLED", "1") != "0",
)

RATE_LIMITS = {
    "read": "200/minute",
    "write": "30/minute",
    "expensive": "6/minute",   # train, scenario injection, gate seeding
}


def get_limiter() -> Limiter:
    return limiter


def read_rate_limit() -> Callable:
    return limiter.limit(RATE_LIMITS["read"])


def write_rate_limit() -> Callable:
    return limiter.limit(RATE_LIMITS["write"])


def expensive_rate_limit() -> Callable:
    return limiter.limit(RATE_LIMITS["expensive"])
