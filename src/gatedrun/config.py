"""Server configuration.

Values come from the environment (``ServerConfig.from_env``) and may be
overridden by ``gatedrun serve`` flags.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_DEBOUNCE_MS = 250


def parse_bind_addr(value: str) -> tuple[str, int]:
    """Split ``host:port``; IPv6 hosts must be bracketed (``[::1]:8000``)."""
    host, sep, port = value.strip().rpartition(":")
    if not sep or not host:
        raise ValueError(f"bind address must be host:port, got {value!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port_number = int(port)
    except ValueError:
        raise ValueError(f"invalid port in bind address {value!r}") from None
    if not 0 < port_number < 65536:
        raise ValueError(f"port out of range in bind address {value!r}")
    return host, port_number


class ServerConfig(BaseModel):
    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, gt=0, lt=65536)
    policy_dir: Path | None = None
    policy_file: Path | None = None  # legacy, ignored when policy_dir is set
    default_cwd: Path | None = None
    reload_debounce_ms: int = Field(default=DEFAULT_DEBOUNCE_MS, ge=0)

    @field_validator("policy_dir", "policy_file", "default_cwd", mode="before")
    @classmethod
    def _blank_is_unset(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @property
    def reload_debounce(self) -> float:
        return self.reload_debounce_ms / 1000

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServerConfig":
        if environ is None:
            environ = os.environ

        values: dict = {
            "policy_dir": environ.get("POLICY_DIR"),
            "policy_file": environ.get("POLICY_FILE"),
            "default_cwd": environ.get("GATEDRUN_DEFAULT_CWD"),
        }

        bind = environ.get("GATEDRUN_BIND_ADDR", "").strip()
        if bind:
            values["host"], values["port"] = parse_bind_addr(bind)

        debounce = environ.get("GATEDRUN_RELOAD_DEBOUNCE_MS", "").strip()
        if debounce:
            values["reload_debounce_ms"] = debounce

        return cls(**values)

    def with_overrides(self, **overrides) -> "ServerConfig":
        """Return a copy with every non-None override applied."""
        updates = {k: v for k, v in overrides.items() if v is not None}
        return self.model_validate({**self.model_dump(), **updates})
