from __future__ import annotations

import os
from dataclasses import dataclass


def _str_env(name: str, *, default: str) -> str:
    return (os.environ.get(name) or "").strip() or default


def _bool_env(name: str, *, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return str(raw).strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    host: str = "127.0.0.1"
    port: int = 8765

    # Reconnect backoff: min..max seconds, multiplied by factor after each failed attempt.
    reconnect_min_s: float = 0.25
    reconnect_max_s: float = 5.0
    reconnect_factor: float = 1.6

    keepalive_interval_s: float = 20.0
    # 0 disables the inbound-silence watchdog.
    liveness_timeout_s: float = 0.0

    # Per-call timeout; None/0 disables.
    call_timeout_s: float | None = 30.0
    queue_when_disconnected: bool = True

    max_message_bytes: int = 2_000_000
    open_timeout_s: float = 1.5
    completed_id_memory: int = 1024

    def __post_init__(self) -> None:
        if self.reconnect_min_s <= 0:
            raise ValueError("reconnect_min_s must be positive")
        if self.reconnect_max_s < self.reconnect_min_s:
            object.__setattr__(self, "reconnect_max_s", self.reconnect_min_s)
        if self.reconnect_factor < 1.0:
            raise ValueError("reconnect_factor must be >= 1.0")
        if self.call_timeout_s is not None and self.call_timeout_s <= 0:
            object.__setattr__(self, "call_timeout_s", None)

    @property
    def gateway_url(self) -> str:
        return f"ws://{self.host}:{int(self.port)}"

    @classmethod
    def from_env(cls) -> BridgeConfig:
        call_timeout = _float_env("MCP_BRIDGE_CALL_TIMEOUT", default=30.0, lo=0.0, hi=3600.0)
        return cls(
            host=_str_env("MCP_BRIDGE_HOST", default="127.0.0.1"),
            port=_int_env("MCP_BRIDGE_PORT", default=8765, lo=0, hi=65535),
            reconnect_min_s=_float_env("MCP_BRIDGE_RECONNECT_MIN", default=0.25, lo=0.01, hi=60.0),
            reconnect_max_s=_float_env("MCP_BRIDGE_RECONNECT_MAX", default=5.0, lo=0.01, hi=600.0),
            reconnect_factor=_float_env("MCP_BRIDGE_RECONNECT_FACTOR", default=1.6, lo=1.0, hi=10.0),
            keepalive_interval_s=_float_env("MCP_BRIDGE_KEEPALIVE_INTERVAL", default=20.0, lo=0.05, hi=600.0),
            liveness_timeout_s=_float_env("MCP_BRIDGE_LIVENESS_TIMEOUT", default=0.0, lo=0.0, hi=3600.0),
            call_timeout_s=call_timeout or None,
            queue_when_disconnected=_bool_env("MCP_BRIDGE_QUEUE_WHEN_DISCONNECTED", default=True),
            max_message_bytes=_int_env("MCP_BRIDGE_MAX_MESSAGE_BYTES", default=2_000_000, lo=1024, hi=256_000_000),
            open_timeout_s=_float_env("MCP_BRIDGE_OPEN_TIMEOUT", default=1.5, lo=0.1, hi=60.0),
            completed_id_memory=_int_env("MCP_BRIDGE_COMPLETED_ID_MEMORY", default=1024, lo=0, hi=1_000_000),
        )


__all__ = ["BridgeConfig"]
