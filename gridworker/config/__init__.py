"""
Configuration package.

Environment settings and exchange account credentials.
"""

from gridworker.config.config import Settings, env_bool
from gridworker.config.accounts import AccountResolver, Credentials, normalize_exchange

__all__ = [
    "Settings",
    "env_bool",
    "AccountResolver",
    "Credentials",
    "normalize_exchange",
]
