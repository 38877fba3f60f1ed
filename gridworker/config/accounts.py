"""
Exchange account credentials resolver.

Credentials live in a YAML file keyed by user then exchange account:

    accounts:
      alice@example.com:
        delta_india:
          api_key: ...
          api_secret: ...
          base_url: https://api.india.delta.exchange   # optional

When a user/exchange pair has no entry the resolver falls back to
DELTA_API_KEY / DELTA_API_SECRET / DELTA_BASE_URL from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from gridworker.core.errors import AuthError, InvariantViolation
from gridworker.monitoring.audit import mask_key
from gridworker.state.models import normalize_exchange

DELTA_GLOBAL_BASE_URL = "https://api.delta.exchange"
DELTA_INDIA_BASE_URL = "https://api.india.delta.exchange"


def default_base_url(exchange: str) -> str:
    return DELTA_GLOBAL_BASE_URL if exchange == "delta_global" else DELTA_INDIA_BASE_URL


@dataclass(frozen=True)
class Credentials:
    api_key: str
    api_secret: str
    base_url: str

    @property
    def masked_key(self) -> str:
        return mask_key(self.api_key) or ""


class AccountResolver:
    def __init__(self, accounts: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None,
                 env_fallback: bool = True) -> None:
        self._accounts = accounts or {}
        self._env_fallback = env_fallback

    @classmethod
    def from_file(cls, path: str, env_fallback: bool = True) -> "AccountResolver":
        p = Path(path)
        if not p.exists():
            return cls({}, env_fallback=env_fallback)
        with p.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise InvariantViolation(f"accounts file {path} must contain a mapping")
        accounts = data.get("accounts", {})
        if not isinstance(accounts, dict):
            raise InvariantViolation(f"accounts file {path}: 'accounts' must be a mapping")
        return cls(accounts, env_fallback=env_fallback)

    def known(self, user: str, exchange: str) -> bool:
        try:
            self.resolve(user, exchange)
        except AuthError:
            return False
        return True

    def resolve(self, user: str, exchange: str) -> Credentials:
        """Return credentials for (user, exchange) or raise AuthError."""
        ex = normalize_exchange(exchange)
        entry = (self._accounts.get(user) or {}).get(ex)
        if isinstance(entry, dict) and entry.get("api_key") and entry.get("api_secret"):
            return Credentials(
                api_key=str(entry["api_key"]),
                api_secret=str(entry["api_secret"]),
                base_url=str(entry.get("base_url") or os.getenv("DELTA_BASE_URL") or default_base_url(ex)).rstrip("/"),
            )

        if self._env_fallback:
            api_key = os.getenv("DELTA_API_KEY")
            api_secret = os.getenv("DELTA_API_SECRET")
            if api_key and api_secret:
                return Credentials(
                    api_key=api_key,
                    api_secret=api_secret,
                    base_url=(os.getenv("DELTA_BASE_URL") or default_base_url(ex)).rstrip("/"),
                )

        raise AuthError(f"Missing exchange credentials for {user} on {ex}")
