from dataclasses import dataclass
import os
from typing import Optional


def _str_env(k: str) -> Optional[str]:
    v = os.getenv(k)
    if v is None or v.strip() == "":
        return None
    return v.strip()


def _float_env(k: str) -> Optional[float]:
    v = _str_env(k)
    if v is None:
        return None
    return float(v)


def _int_env(k: str) -> Optional[int]:
    v = _str_env(k)
    if v is None:
        return None
    return int(v)


def _flag_env(k: str) -> bool:
    return (_str_env(k) or "").lower() in ("1", "true", "yes", "on")


def _or(value, default):
    return default if value is None else value


@dataclass(frozen=True)
class ClientConfig:
    url: str

    reconnect_delay_s: float = 3.0
    level_duration_s: int = 1200
    min_annotation_chars: int = 10

    ping_interval_s: float = 30.0
    ping_timeout_s: float = 10.0

    # follow-up get_state after a dispatched transition; 0 disables it
    confirm_delay_s: float = 0.5

    insecure_ssl: bool = False
    trace: bool = False

    def __post_init__(self) -> None:
        if not str(self.url or "").strip():
            raise ValueError("url is required (CHAMADO_WS_URL)")
        if self.reconnect_delay_s < 0:
            raise ValueError("reconnect_delay_s must be >= 0")
        if self.level_duration_s <= 0:
            raise ValueError("level_duration_s must be > 0")
        if self.min_annotation_chars < 0:
            raise ValueError("min_annotation_chars must be >= 0")
        if self.confirm_delay_s < 0:
            raise ValueError("confirm_delay_s must be >= 0")

    @classmethod
    def from_env(cls, url: Optional[str] = None) -> "ClientConfig":
        return cls(
            url=url or _str_env("CHAMADO_WS_URL") or "",

            reconnect_delay_s=_or(_float_env("CHAMADO_RECONNECT_DELAY_S"), 3.0),
            level_duration_s=_or(_int_env("CHAMADO_LEVEL_DURATION_S"), 1200),
            min_annotation_chars=_or(_int_env("CHAMADO_MIN_ANNOTATION"), 10),

            ping_interval_s=_or(_float_env("CHAMADO_PING_INTERVAL_S"), 30.0),
            ping_timeout_s=_or(_float_env("CHAMADO_PING_TIMEOUT_S"), 10.0),

            confirm_delay_s=_or(_float_env("CHAMADO_CONFIRM_DELAY_S"), 0.5),

            insecure_ssl=_flag_env("CHAMADO_INSECURE_SSL"),
            trace=_flag_env("CHAMADO_WS_TRACE"),
        )
