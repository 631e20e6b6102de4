"""Config management for gpt-auth-bridge.

Settings come from environment variables (optionally loaded from .env by main.py).
"""
import os
from typing import Optional

from errors import ConfigurationError


# Longest lifetime allowed for a stateless access token
MAX_ACCESS_TOKEN_TTL = 60 * 60

DEFAULTS = {
    "oauth_client_id": "",
    "access_token_ttl": "3600",
    "refresh_token_ttl": str(30 * 24 * 60 * 60),
    "refresh_token_rotation": "true",
    "login_url": "/login",
    "error_page_url": "/",
    "paywall_api_url": "https://api.solvapay.com",
    "paywall_timeout": "10",
    "cache_ttl": "2",
    "cache_max_size": "1000",
    "log_level": "INFO",
    "host": "0.0.0.0",
    "port": "8000",
}

ENV_VARS = {
    "jwt_secret": "OAUTH_JWT_SECRET",
    "issuer": "OAUTH_ISSUER",
    "oauth_client_id": "OAUTH_CLIENT_ID",
    "access_token_ttl": "ACCESS_TOKEN_TTL_SECONDS",
    "refresh_token_ttl": "REFRESH_TOKEN_TTL_SECONDS",
    "refresh_token_rotation": "REFRESH_TOKEN_ROTATION",
    "login_url": "LOGIN_URL",
    "error_page_url": "ERROR_PAGE_URL",
    "supabase_url": "SUPABASE_URL",
    "supabase_service_role_key": "SUPABASE_SERVICE_ROLE_KEY",
    "supabase_anon_key": "SUPABASE_ANON_KEY",
    "paywall_api_url": "PAYWALL_API_URL",
    "paywall_secret_key": "PAYWALL_SECRET_KEY",
    "paywall_timeout": "PAYWALL_TIMEOUT_SECONDS",
    "cache_ttl": "CUSTOMER_CACHE_TTL_SECONDS",
    "cache_max_size": "CUSTOMER_CACHE_MAX_SIZE",
    "log_level": "LOG_LEVEL",
    "host": "HOST",
    "port": "PORT",
}


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = data or {}

    def _get(self, key: str) -> Optional[str]:
        value = self.data.get(key)
        if value is None or value == "":
            return DEFAULTS.get(key)
        return value

    def _int(self, key: str) -> int:
        try:
            return int(self._get(key))
        except (TypeError, ValueError):
            raise ConfigurationError(f"{ENV_VARS[key]} must be an integer")

    def _float(self, key: str) -> float:
        try:
            return float(self._get(key))
        except (TypeError, ValueError):
            raise ConfigurationError(f"{ENV_VARS[key]} must be a number")

    @property
    def jwt_secret(self) -> Optional[str]:
        return self._get("jwt_secret")

    @property
    def issuer(self) -> Optional[str]:
        issuer = self._get("issuer")
        return issuer.rstrip("/") if issuer else issuer

    @property
    def oauth_client_id(self) -> str:
        return self._get("oauth_client_id")

    @property
    def access_token_ttl(self) -> int:
        return self._int("access_token_ttl")

    @property
    def refresh_token_ttl(self) -> int:
        return self._int("refresh_token_ttl")

    @property
    def refresh_token_rotation(self) -> bool:
        return self._get("refresh_token_rotation").lower() in ("1", "true", "yes")

    @property
    def login_url(self) -> str:
        return self._get("login_url")

    @property
    def error_page_url(self) -> str:
        return self._get("error_page_url")

    @property
    def supabase_url(self) -> Optional[str]:
        return self._get("supabase_url")

    @property
    def supabase_key(self) -> Optional[str]:
        # Service role bypasses RLS on oauth_refresh_tokens
        return self._get("supabase_service_role_key") or self._get("supabase_anon_key")

    @property
    def paywall_api_url(self) -> str:
        return self._get("paywall_api_url").rstrip("/")

    @property
    def paywall_secret_key(self) -> Optional[str]:
        return self._get("paywall_secret_key")

    @property
    def paywall_timeout(self) -> float:
        return self._float("paywall_timeout")

    @property
    def cache_ttl(self) -> float:
        return self._float("cache_ttl")

    @property
    def cache_max_size(self) -> int:
        return self._int("cache_max_size")

    @property
    def log_level(self) -> str:
        return self._get("log_level").upper()

    @property
    def host(self) -> str:
        return self._get("host")

    @property
    def port(self) -> int:
        return self._int("port")

    def validate(self) -> "Config":
        """Raise ConfigurationError listing every problem, or return self."""
        problems = []
        if not self.jwt_secret:
            problems.append("OAUTH_JWT_SECRET is not set")
        if not self.issuer:
            problems.append("OAUTH_ISSUER is not set")

        for check in (self._check_ttls, self._check_cache):
            try:
                problems.extend(check())
            except ConfigurationError as e:
                problems.append(str(e))

        if problems:
            raise ConfigurationError("; ".join(problems))
        return self

    def _check_ttls(self) -> list:
        problems = []
        if not 0 < self.access_token_ttl <= MAX_ACCESS_TOKEN_TTL:
            problems.append(f"ACCESS_TOKEN_TTL_SECONDS must be between 1 and {MAX_ACCESS_TOKEN_TTL}")
        if self.refresh_token_ttl <= 0:
            problems.append("REFRESH_TOKEN_TTL_SECONDS must be positive")
        return problems

    def _check_cache(self) -> list:
        problems = []
        if self.cache_ttl < 0:
            problems.append("CUSTOMER_CACHE_TTL_SECONDS must not be negative")
        if self.cache_max_size <= 0:
            problems.append("CUSTOMER_CACHE_MAX_SIZE must be positive")
        return problems


def load_config(environ: dict = None) -> Config:
    """Load config from the environment."""
    environ = os.environ if environ is None else environ
    data = {key: environ.get(var) for key, var in ENV_VARS.items()}
    return Config(data)
