from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal

AppEnv = Literal["dev", "test", "prod"]
LogLevel = Literal["debug", "info", "warning", "error"]

_TRUTHY = ("1", "true", "yes", "on")
_FALSY = ("0", "false", "no", "off")


def _getenv(name: str, default: str) -> str:
    # Centralize env access so it’s easy to extend later (type casting, required vars)
    return os.environ.get(name, default).strip()


def _getenv_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})") from None
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


def _getenv_bool(name: str, default: bool) -> bool:
    raw = _getenv(name, "true" if default else "false").lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean (got {raw!r})")


@dataclass(frozen=True)
class Settings:
    app_env: AppEnv
    log_level: LogLevel
    log_json: bool
    port: int
    database_url: str | None
    redis_url: str | None

    # Lifetimes are fixed per issuance; changing them only affects new grants.
    auth_code_ttl_sec: int = 600
    access_token_ttl_sec: int = 3600
    refresh_token_ttl_sec: int = 30 * 24 * 3600

    default_scope: str = "openid"
    idp_login_url: str = "/login"
    idp_consent_url: str = "/consent"
    idp_public_key_pem: str | None = None
    clients_file: str | None = None
    revoke_family_on_reuse: bool = True
    sweep_interval_sec: int = 300

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"

    @property
    def is_prod(self) -> bool:
        return self.app_env == "prod"


def load_settings() -> Settings:
    app_env_raw = _getenv("APP_ENV", "dev").lower()
    log_level_raw = _getenv("LOG_LEVEL", "info").lower()
    port_raw = _getenv("PORT", "8000")

    if app_env_raw not in ("dev", "test", "prod"):
        raise ValueError(f"APP_ENV must be dev|test|prod (got {app_env_raw!r})")

    if log_level_raw not in ("debug", "info", "warning", "error"):
        raise ValueError(
            f"LOG_LEVEL must be debug|info|warning|error (got {log_level_raw!r})"
        )

    try:
        port = int(port_raw)
    except ValueError:
        raise ValueError(f"PORT must be an integer (got {port_raw!r})") from None

    default_scope = " ".join(_getenv("DEFAULT_SCOPE", "openid").split())
    if not default_scope:
        raise ValueError("DEFAULT_SCOPE must not be empty")

    return Settings(  # type: ignore[arg-type]
        app_env=app_env_raw,
        log_level=log_level_raw,
        log_json=_getenv_bool("LOG_JSON", False),
        port=port,
        database_url=_getenv("DATABASE_URL", "") or None,
        redis_url=_getenv("REDIS_URL", "") or None,
        auth_code_ttl_sec=_getenv_int("AUTH_CODE_TTL_SEC", 600, minimum=1),
        access_token_ttl_sec=_getenv_int("ACCESS_TOKEN_TTL_SEC", 3600, minimum=1),
        refresh_token_ttl_sec=_getenv_int(
            "REFRESH_TOKEN_TTL_SEC", 30 * 24 * 3600, minimum=1
        ),
        default_scope=default_scope,
        idp_login_url=_getenv("IDP_LOGIN_URL", "/login"),
        idp_consent_url=_getenv("IDP_CONSENT_URL", "/consent"),
        idp_public_key_pem=_getenv("IDP_PUBLIC_KEY_PEM", "") or None,
        clients_file=_getenv("CLIENTS_FILE", "") or None,
        revoke_family_on_reuse=_getenv_bool("REVOKE_FAMILY_ON_REUSE", True),
        sweep_interval_sec=_getenv_int("SWEEP_INTERVAL_SEC", 300, minimum=1),
    )


# Optional: module-level singleton so imports are cheap
SETTINGS = load_settings()
