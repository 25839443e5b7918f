"""Configuration options for the abyss relay.

Provides RelayOptions for configuring the server and the room limits.
Supports environment variable overrides and an optional YAML file for
containerized deployments.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "http://localhost:5173",
    "http://localhost:5174",
]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class RelayConfigError(Exception):
    """Raised when RelayOptions configuration is invalid."""

    pass


@dataclass
class RelayOptions:
    """Configuration options for the relay.

    Environment Variables:
        ABYSS_HOST: Bind address for `abyss serve`
        ABYSS_PORT: Bind port for `abyss serve`
        ABYSS_ALLOWED_ORIGINS: Comma-separated CORS origins
        ABYSS_LOG_LEVEL: Logging level name
        ABYSS_CONFIG: Path to a YAML file read by RelayOptions.from_env()

    Examples:
        # Defaults plus environment
        options = RelayOptions()

        # Explicit values win over the environment
        options = RelayOptions(port=9000, history_capacity=100)

        # YAML file
        options = RelayOptions.from_file("abyss.yaml")
    """

    host: str | None = None
    """Bind address. Defaults to ABYSS_HOST or 0.0.0.0."""

    port: int | None = None
    """Bind port. Defaults to ABYSS_PORT or 3000."""

    history_capacity: int = 50
    """Entries kept per room; oldest evicted first."""

    replay_limit: int = 20
    """Entries replayed to a newly admitted session."""

    max_message_length: int = 20000
    """Plaintext messages are truncated to this many characters."""

    max_ciphertext_length: int = 131072
    """Encoded ciphertext longer than this is rejected."""

    allowed_origins: list[str] | None = None
    """CORS origins. Defaults to ABYSS_ALLOWED_ORIGINS or the local dev ports."""

    log_level: str | None = None
    """Logging level name. Defaults to ABYSS_LOG_LEVEL or INFO."""

    _sources: list[str] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        """Validate options and apply environment variable overrides."""
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self) -> None:
        """Fill unset options from the environment, then from defaults.

        Explicit options always take priority over the environment.
        """
        if self.host is None:
            self.host = os.environ.get("ABYSS_HOST") or "0.0.0.0"

        if self.port is None:
            env_port = os.environ.get("ABYSS_PORT")
            if env_port:
                try:
                    self.port = int(env_port)
                except ValueError:
                    raise RelayConfigError(f"ABYSS_PORT must be an integer, got {env_port!r}")
            else:
                self.port = 3000

        if self.allowed_origins is None:
            env_origins = os.environ.get("ABYSS_ALLOWED_ORIGINS")
            if env_origins:
                self.allowed_origins = [o.strip() for o in env_origins.split(",") if o.strip()]
            else:
                self.allowed_origins = list(DEFAULT_ALLOWED_ORIGINS)

        if self.log_level is None:
            self.log_level = os.environ.get("ABYSS_LOG_LEVEL") or "INFO"
        self.log_level = self.log_level.upper()

    def _validate(self) -> None:
        """Validate that options are consistent."""
        if not 0 < self.port < 65536:
            raise RelayConfigError(f"port must be between 1 and 65535, got {self.port}")

        if self.history_capacity < 1:
            raise RelayConfigError("history_capacity must be at least 1")

        if self.replay_limit < 0:
            raise RelayConfigError("replay_limit cannot be negative")

        if self.replay_limit > self.history_capacity:
            raise RelayConfigError(
                f"replay_limit ({self.replay_limit}) cannot exceed "
                f"history_capacity ({self.history_capacity})"
            )

        if self.max_message_length < 1 or self.max_ciphertext_length < 1:
            raise RelayConfigError("message length limits must be positive")

        if self.log_level not in LOG_LEVELS:
            raise RelayConfigError(
                f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}"
            )

    @classmethod
    def from_file(cls, path: str | Path, **overrides: Any) -> "RelayOptions":
        """Load options from a YAML file.

        Keyword overrides win over values in the file.

        Raises:
            RelayConfigError: If the file is missing, malformed, or has unknown keys
        """
        path = Path(path)
        if not path.exists():
            raise RelayConfigError(f"Config file not found: {path}")

        with open(path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise RelayConfigError(f"Invalid YAML in {path}: {e}")

        if not isinstance(data, dict):
            raise RelayConfigError(f"{path} must contain a mapping")

        known = {f.name for f in fields(cls) if not f.name.startswith("_")}
        unknown = set(data) - known
        if unknown:
            raise RelayConfigError(f"Unknown option(s) in {path}: {', '.join(sorted(unknown))}")

        data.update(overrides)
        options = cls(**data)
        options._sources.append(str(path))
        return options

    @classmethod
    def from_env(cls, **overrides: Any) -> "RelayOptions":
        """Create options, reading ABYSS_CONFIG if it points at a file."""
        config_path = os.environ.get("ABYSS_CONFIG")
        if config_path:
            return cls.from_file(config_path, **overrides)
        return cls(**overrides)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging)."""
        return {
            "host": self.host,
            "port": self.port,
            "history_capacity": self.history_capacity,
            "replay_limit": self.replay_limit,
            "max_message_length": self.max_message_length,
            "max_ciphertext_length": self.max_ciphertext_length,
            "allowed_origins": list(self.allowed_origins or []),
            "log_level": self.log_level,
            "sources": list(self._sources),
        }
