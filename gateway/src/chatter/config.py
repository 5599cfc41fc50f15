from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    ping_interval_s: int = 30
    ping_miss_limit: int = 2
    max_msg_size: int = 1_048_576
    session_ttl_s: int = 60 * 60
    # 0 keeps peeks until an explicit clear or disconnect
    peek_ttl_s: int = 0
    peek_sweep_interval_s: int = 5
    reject_unknown_recipients: bool = False
    # seeded as an admin account at startup when both are set
    admin_user_id: str | None = None
    admin_password: str | None = field(default=None, repr=False)
    log_level: str = "INFO"

    @property
    def session_ttl_ms(self) -> int:
        return self.session_ttl_s * 1000

    @property
    def peek_ttl_ms(self) -> int:
        return max(self.peek_ttl_s, 0) * 1000

    def with_overrides(self, **overrides: Any) -> "GatewayConfig":
        """Return a copy with every override that is not ``None`` applied."""

        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def _parse_log_level(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    level = raw.upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {', '.join(sorted(_LOG_LEVELS))}")
    return level


def load_config_from_env() -> GatewayConfig:
    defaults = GatewayConfig()
    admin_user_id = os.environ.get("CHATTER_ADMIN_USER_ID") or None
    admin_password = os.environ.get("CHATTER_ADMIN_PASSWORD") or None
    if (admin_user_id is None) != (admin_password is None):
        raise ValueError("CHATTER_ADMIN_USER_ID and CHATTER_ADMIN_PASSWORD must be set together")
    return GatewayConfig(
        host=os.environ.get("CHATTER_HOST") or defaults.host,
        port=_parse_non_negative_int("CHATTER_PORT", defaults.port),
        db_path=os.environ.get("CHATTER_DB_PATH") or None,
        ping_interval_s=max(1, _parse_non_negative_int("CHATTER_PING_INTERVAL_S", defaults.ping_interval_s)),
        ping_miss_limit=_parse_non_negative_int("CHATTER_PING_MISS_LIMIT", defaults.ping_miss_limit),
        max_msg_size=_parse_non_negative_int("CHATTER_MAX_MSG_SIZE", defaults.max_msg_size),
        session_ttl_s=max(1, _parse_non_negative_int("CHATTER_SESSION_TTL_S", defaults.session_ttl_s)),
        peek_ttl_s=_parse_non_negative_int("CHATTER_PEEK_TTL_S", defaults.peek_ttl_s),
        peek_sweep_interval_s=max(
            1, _parse_non_negative_int("CHATTER_PEEK_SWEEP_INTERVAL_S", defaults.peek_sweep_interval_s)
        ),
        reject_unknown_recipients=_parse_bool01(
            "CHATTER_REJECT_UNKNOWN_RECIPIENTS", defaults.reject_unknown_recipients
        ),
        log_level=_parse_log_level("CHATTER_LOG_LEVEL", defaults.log_level),
        admin_user_id=admin_user_id,
        admin_password=admin_password,
    )
