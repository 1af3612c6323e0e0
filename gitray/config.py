"""Configuration for the Gitray sync engine.

Configuration can be built directly, loaded from a JSON file or read from
``GITRAY_*`` environment variables. String values in files may reference
environment variables with ``${VAR}`` or ``${VAR:-default}``.
"""

import json
import os
import re
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

__all__ = [
    "GitrayConfig",
    "load_config",
    "expand_env_vars",
]

ENV_REFERENCE = re.compile(
    r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>[^}]*))?\}"
)

DELETION_STRATEGIES = ("soft", "hard")


def expand_env_vars(value: Any, environ: Mapping[str, str] | None = None) -> Any:
    """Expand ``${VAR}`` and ``${VAR:-default}`` references.

    Strings are expanded directly; lists and dicts have every string value
    expanded. Other values are returned unchanged. An unset variable without
    a default expands to an empty string.
    """
    env = os.environ if environ is None else environ
    if isinstance(value, dict):
        return {key: expand_env_vars(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item, env) for item in value]
    if not isinstance(value, str):
        return value
    return ENV_REFERENCE.sub(
        lambda match: env.get(match["name"], match["default"] or ""), value
    )


@dataclass
class GitrayConfig:
    """Settings shared by the engine, the local store and the remote."""

    db_name: str = "local-gitray"
    repo_prefix: str = "gitray-db"
    entry_name: str = "entry"
    items_per_chunk: int = 1000
    deletion_strategy: str = "soft"  # "soft" keeps tombstones, "hard" removes
    order_keys: list[str] = field(default_factory=list)
    debounce_seconds: float = 2.0
    max_debounce_seconds: float = 60.0
    commit_timeout: float = 30.0
    data_dir: str | None = None  # None keeps the local store in memory
    branch: str | None = None  # None uses the repository's default branch

    def validate(self) -> "GitrayConfig":
        """Check value ranges.

        Raises:
            ValueError: If a setting is out of range
        """
        if not self.db_name:
            raise ValueError("db_name must not be empty")
        if not self.entry_name or "/" in self.entry_name:
            raise ValueError(f"Invalid entry_name: {self.entry_name!r}")
        if self.items_per_chunk < 1:
            raise ValueError(
                f"items_per_chunk must be positive, got {self.items_per_chunk}"
            )
        if self.deletion_strategy not in DELETION_STRATEGIES:
            raise ValueError(
                f"deletion_strategy must be one of {DELETION_STRATEGIES}, "
                f"got {self.deletion_strategy!r}"
            )
        if self.debounce_seconds < 0:
            raise ValueError("debounce_seconds must not be negative")
        if self.max_debounce_seconds < self.debounce_seconds:
            raise ValueError("max_debounce_seconds must be >= debounce_seconds")
        if self.commit_timeout <= 0:
            raise ValueError("commit_timeout must be positive")
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GitrayConfig":
        """Create a config from a dictionary, expanding env var references.

        Raises:
            ValueError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}")
        return cls(**expand_env_vars(data)).validate()

    @classmethod
    def from_env(cls, prefix: str = "GITRAY_") -> "GitrayConfig":
        """Create a config from ``<prefix><FIELD>`` environment variables."""
        values: dict[str, Any] = {}
        for f in fields(cls):
            raw = os.environ.get(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            default = getattr(cls(), f.name)
            if isinstance(default, bool):
                values[f.name] = raw.lower() in ("1", "true", "yes")
            elif isinstance(default, int):
                values[f.name] = int(raw)
            elif isinstance(default, float):
                values[f.name] = float(raw)
            elif isinstance(default, list):
                values[f.name] = [v.strip() for v in raw.split(",") if v.strip()]
            else:
                values[f.name] = raw
        return cls(**values).validate()


def load_config(path: Path | str) -> GitrayConfig:
    """Load a config from a JSON file; a missing file gives the defaults."""
    path = Path(path).expanduser()
    if not path.exists():
        return GitrayConfig()
    with open(path) as f:
        return GitrayConfig.from_dict(json.load(f))
