"""Centralized application configuration for the authgate service."""
from __future__ import annotations

import ipaddress
import re
from pathlib import Path

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict


_ROOT_DIR = Path(__file__).resolve().parents[3]
_SERVICE_DIR = _ROOT_DIR / "backend" / "authgate"
_DEFAULT_ENV_FILES: tuple[Path, ...] = (
    _ROOT_DIR / ".env",
    _SERVICE_DIR / ".env",
)

# Loopback only: a reverse proxy on the same host.
_DEFAULT_TRUSTED_PROXIES = ("127.0.0.1/32", "::1/128")

_DEFAULT_SUSPICIOUS_AGENTS = (
    "curl",
    "wget",
    "python-requests",
    "bot",
    "crawler",
    "scanner",
    "exploit",
)


class AuthSettings(BaseModel):
    """Credential, token and second-factor configuration."""

    model_config = ConfigDict(populate_by_name=True)

    jwt_secret: str = Field(
        default="change-me-in-production",
        min_length=8,
        validation_alias=AliasChoices("AUTH_JWT_SECRET", "AUTH__JWT_SECRET"),
    )
    access_token_ttl_seconds: int = Field(
        default=3_600,
        ge=60,
        le=86_400,
        validation_alias=AliasChoices(
            "AUTH_ACCESS_TOKEN_TTL_SECONDS",
            "AUTH__ACCESS_TOKEN_TTL_SECONDS",
        ),
        description="Lifetime of an access credential and its session row.",
    )
    refresh_token_ttl_seconds: int = Field(
        default=604_800,
        ge=3_600,
        le=2_592_000,
        validation_alias=AliasChoices(
            "AUTH_REFRESH_TOKEN_TTL_SECONDS",
            "AUTH__REFRESH_TOKEN_TTL_SECONDS",
        ),
    )
    remember_me_refresh_token_ttl_seconds: int = Field(
        default=2_592_000,
        ge=3_600,
        le=7_776_000,
        validation_alias=AliasChoices(
            "AUTH_REMEMBER_ME_REFRESH_TOKEN_TTL_SECONDS",
            "AUTH__REMEMBER_ME_REFRESH_TOKEN_TTL_SECONDS",
        ),
    )
    handshake_token_ttl_seconds: int = Field(
        default=300,
        ge=300,
        le=300,
        validation_alias=AliasChoices(
            "AUTH_HANDSHAKE_TOKEN_TTL_SECONDS",
            "AUTH__HANDSHAKE_TOKEN_TTL_SECONDS",
        ),
    )
    handshake_issuer: str = Field(
        default="authgate-handshake",
        validation_alias=AliasChoices("AUTH_HANDSHAKE_ISSUER", "AUTH__HANDSHAKE_ISSUER"),
    )
    totp_issuer: str = Field(
        default="Authgate",
        validation_alias=AliasChoices("AUTH_TOTP_ISSUER", "AUTH__TOTP_ISSUER"),
    )
    totp_valid_window: int = Field(
        default=2,
        ge=0,
        le=4,
        validation_alias=AliasChoices("AUTH_TOTP_VALID_WINDOW", "AUTH__TOTP_VALID_WINDOW"),
    )
    backup_code_count: int = Field(
        default=8,
        ge=4,
        le=20,
        validation_alias=AliasChoices("AUTH_BACKUP_CODE_COUNT", "AUTH__BACKUP_CODE_COUNT"),
    )
    password_hash_time_cost: int = Field(
        default=3,
        ge=1,
        le=10,
        validation_alias=AliasChoices(
            "AUTH_PASSWORD_HASH_TIME_COST",
            "AUTH__PASSWORD_HASH_TIME_COST",
        ),
    )
    password_hash_memory_cost: int = Field(
        default=65_536,
        ge=8_192,
        validation_alias=AliasChoices(
            "AUTH_PASSWORD_HASH_MEMORY_COST",
            "AUTH__PASSWORD_HASH_MEMORY_COST",
        ),
        description="Argon2 memory cost in KiB.",
    )
    require_verified_email: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "AUTH_REQUIRE_VERIFIED_EMAIL",
            "AUTH__REQUIRE_VERIFIED_EMAIL",
        ),
    )
    public_base_url: str = Field(
        default="http://localhost:8000",
        validation_alias=AliasChoices("AUTH_PUBLIC_BASE_URL", "AUTH__PUBLIC_BASE_URL"),
    )
    password_reset_path: str = Field(
        default="/auth/reset-password",
        validation_alias=AliasChoices("AUTH_PASSWORD_RESET_PATH", "AUTH__PASSWORD_RESET_PATH"),
    )
    password_reset_token_ttl_seconds: int = Field(
        default=3_600,
        ge=300,
        le=86_400,
        validation_alias=AliasChoices(
            "AUTH_PASSWORD_RESET_TOKEN_TTL_SECONDS",
            "AUTH__PASSWORD_RESET_TOKEN_TTL_SECONDS",
        ),
    )

    @field_validator("public_base_url", mode="before")
    @classmethod
    def _normalise_public_base_url(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("AUTH_PUBLIC_BASE_URL must be provided")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("AUTH_PUBLIC_BASE_URL must be a non-empty string")
        return cleaned.rstrip("/") or cleaned

    @field_validator("password_reset_path", mode="before")
    @classmethod
    def _normalise_path(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("Endpoint paths must be provided")
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Endpoint paths must be non-empty strings")
        if not cleaned.startswith("/"):
            cleaned = f"/{cleaned}"
        return cleaned

    @model_validator(mode="after")
    def _check_refresh_lifetimes(self) -> "AuthSettings":
        if self.remember_me_refresh_token_ttl_seconds < self.refresh_token_ttl_seconds:
            raise ValueError(
                "Remember-me refresh tokens must not expire before regular refresh tokens"
            )
        return self


class LockoutSettings(BaseModel):
    """Progressive account lockout thresholds."""

    model_config = ConfigDict(populate_by_name=True)

    max_attempts: int = Field(
        default=5,
        ge=1,
        le=100,
        validation_alias=AliasChoices("LOCKOUT_MAX_ATTEMPTS", "LOCKOUT__MAX_ATTEMPTS"),
    )
    base_duration_seconds: int = Field(
        default=900,
        ge=1,
        validation_alias=AliasChoices(
            "LOCKOUT_BASE_DURATION_SECONDS",
            "LOCKOUT__BASE_DURATION_SECONDS",
        ),
    )
    attempt_window_seconds: int = Field(
        default=300,
        ge=1,
        validation_alias=AliasChoices(
            "LOCKOUT_ATTEMPT_WINDOW_SECONDS",
            "LOCKOUT__ATTEMPT_WINDOW_SECONDS",
        ),
    )
    progressive: bool = Field(
        default=True,
        validation_alias=AliasChoices("LOCKOUT_PROGRESSIVE", "LOCKOUT__PROGRESSIVE"),
    )
    max_duration_seconds: int = Field(
        default=86_400,
        ge=1,
        validation_alias=AliasChoices(
            "LOCKOUT_MAX_DURATION_SECONDS",
            "LOCKOUT__MAX_DURATION_SECONDS",
        ),
    )

    @model_validator(mode="after")
    def _check_cap(self) -> "LockoutSettings":
        if self.max_duration_seconds < self.base_duration_seconds:
            raise ValueError("Lockout cap must be at least the base lockout duration")
        return self


class RateLimitSettings(BaseModel):
    """Per endpoint class request budgets."""

    model_config = ConfigDict(populate_by_name=True)

    namespace: str = Field(
        default="authgate:rl",
        validation_alias=AliasChoices("RATE_LIMIT_NAMESPACE", "RATE_LIMIT__NAMESPACE"),
    )
    global_limit: int = Field(
        default=100,
        ge=1,
        validation_alias=AliasChoices("RATE_LIMIT_GLOBAL_LIMIT", "RATE_LIMIT__GLOBAL_LIMIT"),
    )
    global_window_seconds: int = Field(
        default=60,
        ge=1,
        validation_alias=AliasChoices(
            "RATE_LIMIT_GLOBAL_WINDOW_SECONDS",
            "RATE_LIMIT__GLOBAL_WINDOW_SECONDS",
        ),
    )
    auth_limit: int = Field(
        default=10,
        ge=1,
        validation_alias=AliasChoices("RATE_LIMIT_AUTH_LIMIT", "RATE_LIMIT__AUTH_LIMIT"),
    )
    auth_window_seconds: int = Field(
        default=60,
        ge=1,
        validation_alias=AliasChoices(
            "RATE_LIMIT_AUTH_WINDOW_SECONDS",
            "RATE_LIMIT__AUTH_WINDOW_SECONDS",
        ),
    )
    login_limit: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices("RATE_LIMIT_LOGIN_LIMIT", "RATE_LIMIT__LOGIN_LIMIT"),
    )
    login_window_seconds: int = Field(
        default=60,
        ge=1,
        validation_alias=AliasChoices(
            "RATE_LIMIT_LOGIN_WINDOW_SECONDS",
            "RATE_LIMIT__LOGIN_WINDOW_SECONDS",
        ),
    )
    register_limit: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices("RATE_LIMIT_REGISTER_LIMIT", "RATE_LIMIT__REGISTER_LIMIT"),
    )
    register_window_seconds: int = Field(
        default=60,
        ge=1,
        validation_alias=AliasChoices(
            "RATE_LIMIT_REGISTER_WINDOW_SECONDS",
            "RATE_LIMIT__REGISTER_WINDOW_SECONDS",
        ),
    )
    password_reset_limit: int = Field(
        default=3,
        ge=1,
        validation_alias=AliasChoices(
            "RATE_LIMIT_PASSWORD_RESET_LIMIT",
            "RATE_LIMIT__PASSWORD_RESET_LIMIT",
        ),
    )
    password_reset_window_seconds: int = Field(
        default=300,
        ge=1,
        validation_alias=AliasChoices(
            "RATE_LIMIT_PASSWORD_RESET_WINDOW_SECONDS",
            "RATE_LIMIT__PASSWORD_RESET_WINDOW_SECONDS",
        ),
    )
    sensitive_limit: int = Field(
        default=2,
        ge=1,
        validation_alias=AliasChoices("RATE_LIMIT_SENSITIVE_LIMIT", "RATE_LIMIT__SENSITIVE_LIMIT"),
    )
    sensitive_window_seconds: int = Field(
        default=300,
        ge=1,
        validation_alias=AliasChoices(
            "RATE_LIMIT_SENSITIVE_WINDOW_SECONDS",
            "RATE_LIMIT__SENSITIVE_WINDOW_SECONDS",
        ),
    )

    @field_validator("namespace", mode="before")
    @classmethod
    def _normalise_namespace(cls, value: str | None) -> str:
        if value is None:
            return "authgate:rl"
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Rate limit namespace must be a non-empty string")
        return cleaned


class ThreatSettings(BaseModel):
    """Brute-force detection and address blocking thresholds."""

    model_config = ConfigDict(populate_by_name=True)

    brute_force_threshold: int = Field(
        default=10,
        ge=1,
        validation_alias=AliasChoices(
            "THREATS_BRUTE_FORCE_THRESHOLD",
            "THREATS__BRUTE_FORCE_THRESHOLD",
        ),
    )
    brute_force_window_seconds: int = Field(
        default=600,
        ge=1,
        validation_alias=AliasChoices(
            "THREATS_BRUTE_FORCE_WINDOW_SECONDS",
            "THREATS__BRUTE_FORCE_WINDOW_SECONDS",
        ),
    )
    block_duration_seconds: int = Field(
        default=86_400,
        ge=60,
        validation_alias=AliasChoices(
            "THREATS_BLOCK_DURATION_SECONDS",
            "THREATS__BLOCK_DURATION_SECONDS",
        ),
    )
    suspicious_score: int = Field(
        default=50,
        ge=1,
        le=100,
        validation_alias=AliasChoices("THREATS_SUSPICIOUS_SCORE", "THREATS__SUSPICIOUS_SCORE"),
    )
    block_score: int = Field(
        default=80,
        ge=1,
        le=200,
        validation_alias=AliasChoices("THREATS_BLOCK_SCORE", "THREATS__BLOCK_SCORE"),
    )
    suspicious_address_failures: int = Field(
        default=5,
        ge=1,
        validation_alias=AliasChoices(
            "THREATS_SUSPICIOUS_ADDRESS_FAILURES",
            "THREATS__SUSPICIOUS_ADDRESS_FAILURES",
        ),
    )
    suspicious_user_agents: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_SUSPICIOUS_AGENTS),
        validation_alias=AliasChoices(
            "THREATS_SUSPICIOUS_USER_AGENTS",
            "THREATS__SUSPICIOUS_USER_AGENTS",
        ),
    )

    @field_validator("suspicious_user_agents", mode="before")
    @classmethod
    def _normalise_agents(cls, value: list[str] | str | None) -> list[str]:
        if value is None:
            return list(_DEFAULT_SUSPICIOUS_AGENTS)
        if isinstance(value, str):
            candidates = value.replace(",", " ").split()
        else:
            candidates = [str(item) for item in value]
        cleaned: list[str] = []
        for candidate in candidates:
            normalised = candidate.strip().lower()
            if normalised and normalised not in cleaned:
                cleaned.append(normalised)
        return cleaned

    @property
    def suspicious_agent_pattern(self) -> re.Pattern[str] | None:
        if not self.suspicious_user_agents:
            return None
        joined = "|".join(re.escape(agent) for agent in self.suspicious_user_agents)
        return re.compile(joined, re.IGNORECASE)


class StorageSettings(BaseModel):
    """Relational and cache storage configuration."""

    database_url: str = Field(
        default="sqlite+aiosqlite:///./authgate.db",
        validation_alias=AliasChoices("DATABASE_URL", "STORAGE__DATABASE_URL"),
    )
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("REDIS_URL", "STORAGE__REDIS_URL"),
    )
    sqlalchemy_echo: bool | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "SQLALCHEMY_ECHO",
            "DATABASE_ECHO",
            "STORAGE__SQLALCHEMY_ECHO",
        ),
    )

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("database_url", mode="before")
    @classmethod
    def _ensure_database_url(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("DATABASE_URL must be configured")
        url = value.strip()
        if not url:
            raise ValueError("DATABASE_URL must be a non-empty string")
        return url

    @field_validator("redis_url", mode="before")
    @classmethod
    def _clean_redis_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class SecuritySettings(BaseModel):
    """Key material for data encrypted at rest and which peers may forward client addresses."""

    model_config = ConfigDict(populate_by_name=True)

    encryption_key_hex: str = Field(
        default="0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef",
        validation_alias=AliasChoices("AUTHGATE_ENC_KEY", "SECURITY__ENCRYPTION_KEY"),
        description="32-byte hex encoded key used for encrypting TOTP secrets.",
    )

    @field_validator("encryption_key_hex", mode="before")
    @classmethod
    def _validate_key(cls, value: str | None) -> str:
        if value is None:
            raise ValueError("AUTHGATE_ENC_KEY must be provided as a 32-byte hex string")
        value = value.strip()
        try:
            key_bytes = bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError("AUTHGATE_ENC_KEY must be a valid hex string") from exc
        if len(key_bytes) != 32:
            raise ValueError("AUTHGATE_ENC_KEY must decode to exactly 32 bytes")
        return value

    trusted_proxies: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_TRUSTED_PROXIES),
        validation_alias=AliasChoices("TRUSTED_PROXIES", "SECURITY__TRUSTED_PROXIES"),
        description="Peers (addresses or CIDR ranges) whose X-Forwarded-For header is honoured.",
    )

    @field_validator("trusted_proxies", mode="before")
    @classmethod
    def _validate_proxies(cls, value: list[str] | str | None) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            candidates = value.replace(",", " ").split()
        else:
            candidates = [str(item).strip() for item in value]
        cleaned: list[str] = []
        for candidate in candidates:
            try:
                network = str(ipaddress.ip_network(candidate, strict=False))
            except ValueError as exc:
                raise ValueError(f"Invalid trusted proxy entry: {candidate!r}") from exc
            if network not in cleaned:
                cleaned.append(network)
        return cleaned

    @property
    def encryption_key_bytes(self) -> bytes:
        return bytes.fromhex(self.encryption_key_hex)

    @property
    def trusted_proxy_networks(self) -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
        return tuple(ipaddress.ip_network(entry) for entry in self.trusted_proxies)


class MaintenanceSettings(BaseModel):
    """Background sweep of expired credentials and counters."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("MAINTENANCE_ENABLED", "MAINTENANCE__ENABLED"),
    )
    interval_seconds: int = Field(
        default=300,
        ge=5,
        validation_alias=AliasChoices(
            "MAINTENANCE_INTERVAL_SECONDS",
            "MAINTENANCE__INTERVAL_SECONDS",
        ),
    )
    login_attempt_retention_days: int = Field(
        default=30,
        ge=1,
        validation_alias=AliasChoices(
            "MAINTENANCE_LOGIN_ATTEMPT_RETENTION_DAYS",
            "MAINTENANCE__LOGIN_ATTEMPT_RETENTION_DAYS",
        ),
    )
    revoked_token_retention_days: int = Field(
        default=7,
        ge=0,
        validation_alias=AliasChoices(
            "MAINTENANCE_REVOKED_TOKEN_RETENTION_DAYS",
            "MAINTENANCE__REVOKED_TOKEN_RETENTION_DAYS",
        ),
    )


class Settings(BaseSettings):
    """Top level authgate configuration."""

    env: str = Field(default="dev", validation_alias=AliasChoices("ENV", "APP_ENV"))
    auth: AuthSettings = Field(default_factory=AuthSettings)
    lockout: LockoutSettings = Field(default_factory=LockoutSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    threats: ThreatSettings = Field(default_factory=ThreatSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    maintenance: MaintenanceSettings = Field(default_factory=MaintenanceSettings)

    model_config = SettingsConfigDict(
        env_file=_DEFAULT_ENV_FILES,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        return self.storage.database_url

    @property
    def redis_url(self) -> str | None:
        return self.storage.redis_url

    @property
    def sqlalchemy_echo(self) -> bool:
        if self.storage.sqlalchemy_echo is not None:
            return self.storage.sqlalchemy_echo
        return False

    @property
    def encryption_key(self) -> bytes:
        return self.security.encryption_key_bytes


settings = Settings()

__all__ = [
    "AuthSettings",
    "LockoutSettings",
    "MaintenanceSettings",
    "RateLimitSettings",
    "SecuritySettings",
    "Settings",
    "StorageSettings",
    "ThreatSettings",
    "settings",
]
