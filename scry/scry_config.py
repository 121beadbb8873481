from __future__ import annotations

import logging
import os
import sys
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SCRY_CONFIG"

DEFAULT_TIMEOUT_MS = 1000


@dataclass
class ScryConfig:
    """Engine settings. Keys may be written kebab-case in YAML (`timeout-ms`)."""
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    startup_timeout_ms: int = 10000
    drain_grace_ms: int = 200
    max_depth: int = 10
    max_array_length: int = 100
    max_object_keys: int = 50
    console_name: str = "console"
    python_executable: str = field(default_factory=lambda: sys.executable)

    def __post_init__(self):
        for name in ('timeout_ms', 'startup_timeout_ms', 'max_depth', 'max_array_length', 'max_object_keys'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if not isinstance(self.drain_grace_ms, int) or self.drain_grace_ms < 0:
            raise ValueError(f"drain_grace_ms must be a non-negative integer, got {self.drain_grace_ms!r}")
        if not self.console_name.isidentifier():
            raise ValueError(f"console_name must be an identifier, got {self.console_name!r}")

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> 'ScryConfig':
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            name = str(key).strip().replace('-', '_')
            if name not in known:
                raise ValueError(f"unknown configuration key: {key!r}")
            kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return asdict(self)

    def worker_settings(self) -> dict:
        """The subset the worker process needs."""
        return {
            'drain_grace_ms': self.drain_grace_ms,
            'max_depth': self.max_depth,
            'max_array_length': self.max_array_length,
            'max_object_keys': self.max_object_keys,
            'console_name': self.console_name,
        }


def load_config(path: Optional[str | os.PathLike] = None) -> ScryConfig:
    """Load settings from a YAML file; `SCRY_CONFIG` names the file when
    `path` is omitted. No file means defaults."""
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or None
    if path is None:
        return ScryConfig()
    p = Path(path)
    data = yaml.safe_load(p.read_text(encoding="utf-8"))
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{p}: expected a mapping at the top level, got {type(data).__name__}")
    logger.debug("loaded configuration from %s", p)
    return ScryConfig.from_mapping(data)
