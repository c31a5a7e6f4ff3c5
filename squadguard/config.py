from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_endpoint_limits(raw: str | None, fallback: dict[str, tuple[int, int]]) -> dict[str, tuple[int, int]]:
    """Parse ``path:max/window`` chunks; malformed chunks are skipped."""
    if raw is None or not raw.strip():
        return dict(fallback)

    rules: dict[str, tuple[int, int]] = {}
    for chunk in _split_csv(raw):
        path, sep, remainder = chunk.rpartition(":")
        if not sep or not path:
            continue
        limit_part, sep2, window_part = remainder.partition("/")
        if not sep2:
            continue
        try:
            rules[path.strip()] = (int(limit_part.strip()), int(window_part.strip()))
        except ValueError:
            continue
    return rules


def _parse_thresholds(raw: str | None) -> dict[str, tuple[int, float, Optional[str]]]:
    """Parse ``kind:max/window[/severity]`` overrides for the event threshold table."""
    if raw is None or not raw.strip():
        return {}

    overrides: dict[str, tuple[int, float, Optional[str]]] = {}
    for chunk in _split_csv(raw):
        kind, sep, remainder = chunk.partition(":")
        if not sep:
            continue
        parts = [part.strip() for part in remainder.split("/")]
        if len(parts) not in (2, 3):
            continue
        try:
            max_attempts = int(parts[0])
            window_seconds = float(parts[1])
        except ValueError:
            continue
        severity = parts[2].lower() if len(parts) == 3 and parts[2] else None
        overrides[kind.strip().lower()] = (max_attempts, window_seconds, severity)
    return overrides


_DEFAULT_SECRET_KEY = "change-me-in-production-min-32-bytes-key"

DEFAULT_ENDPOINT_LIMITS: dict[str, tuple[int, int]] = {
    "/api/generate-icebreaker": (10, 60),
    "/api/create-payment-intent": (5, 60),
    "/api/confirm-payment": (3, 60),
    "/api/compare-players": (20, 60),
}


@dataclass(frozen=True)
class Settings:
    env: str
    secret_key: str
    jwt_algorithm: str
    jwt_exp_minutes: int
    cors_origins: list[str]
    log_level: str
    enable_prometheus_metrics: bool
    block_duration_seconds: float
    sweep_interval_seconds: float
    attempt_max_age_seconds: float
    event_thresholds: dict[str, tuple[int, float, Optional[str]]]
    rate_limit_requests: int
    rate_limit_window_seconds: int
    endpoint_rate_limits: dict[str, tuple[int, int]]
    max_body_bytes: int
    min_user_agent_length: int
    max_json_depth: int
    trust_forwarded_headers: bool
    guard_exempt_paths: frozenset[str]
    inspection_exempt_prefixes: tuple[str, ...]
    security_headers_enabled: bool

    @property
    def is_production(self) -> bool:
        return self.env.lower() not in {"development", "dev", "test", "testing"}

    def validate(self) -> None:
        """Raise early on dangerous mis-configurations in non-dev environments."""
        if self.is_production and self.secret_key == _DEFAULT_SECRET_KEY:
            raise RuntimeError(
                "SECRET_KEY must be explicitly set in production. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )
        if self.block_duration_seconds <= 0:
            raise RuntimeError("BLOCK_DURATION_SECONDS must be positive")
        if self.sweep_interval_seconds <= 0:
            raise RuntimeError("SWEEP_INTERVAL_SECONDS must be positive")


def load_settings() -> Settings:
    return Settings(
        env=os.getenv("ENV", "development"),
        secret_key=os.getenv("SECRET_KEY", _DEFAULT_SECRET_KEY),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        jwt_exp_minutes=_as_int(os.getenv("JWT_EXP_MINUTES"), 60),
        cors_origins=_split_csv(os.getenv("CORS_ORIGINS", "http://localhost:3000")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
        enable_prometheus_metrics=_as_bool(os.getenv("ENABLE_PROMETHEUS_METRICS"), True),
        block_duration_seconds=_as_float(os.getenv("BLOCK_DURATION_SECONDS"), 30 * 60),
        sweep_interval_seconds=_as_float(os.getenv("SWEEP_INTERVAL_SECONDS"), 60 * 60),
        attempt_max_age_seconds=_as_float(os.getenv("ATTEMPT_MAX_AGE_SECONDS"), 24 * 60 * 60),
        event_thresholds=_parse_thresholds(os.getenv("SECURITY_THRESHOLDS")),
        rate_limit_requests=max(1, _as_int(os.getenv("RATE_LIMIT_REQUESTS"), 100)),
        rate_limit_window_seconds=max(1, _as_int(os.getenv("RATE_LIMIT_WINDOW_SECONDS"), 15 * 60)),
        endpoint_rate_limits=_parse_endpoint_limits(os.getenv("ENDPOINT_RATE_LIMITS"), DEFAULT_ENDPOINT_LIMITS),
        max_body_bytes=max(1, _as_int(os.getenv("MAX_BODY_BYTES"), 1024 * 1024)),
        min_user_agent_length=max(0, _as_int(os.getenv("MIN_USER_AGENT_LENGTH"), 10)),
        max_json_depth=max(1, _as_int(os.getenv("MAX_JSON_DEPTH"), 32)),
        trust_forwarded_headers=_as_bool(os.getenv("TRUST_FORWARDED_HEADERS"), False),
        guard_exempt_paths=frozenset(
            _split_csv(os.getenv("GUARD_EXEMPT_PATHS", "/health,/metrics,/docs,/openapi.json"))
        ),
        inspection_exempt_prefixes=tuple(_split_csv(os.getenv("GUARD_INSPECTION_EXEMPT_PREFIXES", "/api/security/"))),
        security_headers_enabled=_as_bool(os.getenv("SECURITY_HEADERS_ENABLED"), True),
    )


settings = load_settings()

settings.validate()
