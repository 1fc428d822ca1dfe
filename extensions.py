"""
Shared Flask extensions, created unbound and attached in create_app().

The limiter reads RATELIMIT_STORAGE_URI from app config (memory:// by
default, redis:// in production deployments).
"""

from __future__ import annotations

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, default_limits=["600 per hour"])
