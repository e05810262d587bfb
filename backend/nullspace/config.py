"""Configuration for the nullspace core (env vars, read at call time)."""

import os
from dataclasses import dataclass
from pathlib import Path


def get_env(key: str, default: str | None = None) -> str | None:
    return os.getenv(key, default)


def get_env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def data_dir() -> Path:
    raw = get_env("NULLSPACE_DATA_DIR") or os.path.expanduser("~/.nullspace")
    return Path(raw)


def log_level() -> str:
    return get_env("NULLSPACE_LOG_LEVEL", "INFO") or "INFO"


def default_search_limit() -> int:
    return get_env_int("NULLSPACE_SEARCH_LIMIT", 20)


@dataclass(frozen=True)
class KdfParams:
    # Argon2id defaults (19 MiB, 2 passes, 1 lane)
    time_cost: int = 2
    memory_cost: int = 19456
    parallelism: int = 1
    hash_len: int = 32

    @classmethod
    def from_env(cls) -> "KdfParams":
        return cls(
            time_cost=get_env_int("NULLSPACE_ARGON2_TIME_COST", cls.time_cost),
            memory_cost=get_env_int("NULLSPACE_ARGON2_MEMORY_COST", cls.memory_cost),
            parallelism=get_env_int("NULLSPACE_ARGON2_PARALLELISM", cls.parallelism),
        )

    def problems(self) -> list[str]:
        out = []
        if self.time_cost < 1:
            out.append("time_cost must be >= 1")
        if self.parallelism < 1:
            out.append("parallelism must be >= 1")
        if self.memory_cost < 8 * max(self.parallelism, 1):
            out.append("memory_cost must be >= 8 * parallelism")
        if self.hash_len != 32:
            out.append("hash_len must be 32")
        return out
