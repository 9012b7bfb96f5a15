"""calsync configuration loading and validation.

Reads ``calsync.toml`` from a config directory, resolves ``${VAR}`` references
from the environment, and returns a validated ``CalsyncConfig`` dataclass.

Example::

    [calsync]
    host = "0.0.0.0"
    port = 8400

    [calsync.db]
    name = "calsync"

    [calsync.logging]
    level = "INFO"
    format = "json"

    [calsync.sync]
    timeout_s = 60
    deletion_conflict_policy = "drop"

    [calsync.push]
    heartbeat_interval_s = 30

    [calsync.remote]
    username = "alice"
    password = "${CALDAV_PASSWORD}"
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "calsync.toml"

# ${VAR_NAME} references; names are letters, digits and underscores.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_PUSH_PATHS: tuple[str, ...] = ("/api/ws", "/ws")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


class DeletionConflictPolicy(enum.StrEnum):
    """What to do when a local unpushed edit meets a remote deletion of the same uid."""

    DROP = "drop"
    RECREATE = "recreate"


@dataclass
class LoggingConfig:
    """Logging configuration from [calsync.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database target from [calsync.db]; credentials come from the environment."""

    name: str = "calsync"
    schema: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class SyncConfig:
    """Sync engine knobs from [calsync.sync].

    ``infer_deletions`` gates the "missing from a complete listing means
    deleted" inference for incremental syncs. It is only ever applied when the
    remote also reports the listing as complete.
    """

    timeout_s: float = 60.0
    deletion_conflict_policy: DeletionConflictPolicy = DeletionConflictPolicy.DROP
    infer_deletions: bool = True
    request_timeout_s: float = 20.0


@dataclass
class PushConfig:
    """Live push channel knobs from [calsync.push]."""

    paths: tuple[str, ...] = DEFAULT_PUSH_PATHS
    heartbeat_interval_s: float = 30.0
    heartbeat_timeout_s: float = 10.0
    handshake_timeout_s: float = 10.0
    max_buffered_bytes: int = 1_048_576
    backlog_limit: int = 50


@dataclass
class RemoteConfig:
    """Static CalDAV credentials from [calsync.remote]."""

    username: str | None = None
    password: str | None = None


@dataclass
class CalsyncConfig:
    """Parsed representation of calsync.toml."""

    host: str = "127.0.0.1"
    port: int = 8400
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    push: PushConfig = field(default_factory=PushConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:5173"])


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(parent: dict[str, Any], name: str) -> dict[str, Any]:
    raw = parent.get(name, {})
    if not isinstance(raw, dict):
        raise ConfigError(f"calsync.{name} must be a table")
    return raw


def _positive_number(section: dict[str, Any], key: str, default: float, label: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"Invalid {label}: {raw!r}. Must be a number.")
    if raw <= 0:
        raise ConfigError(f"Invalid {label}: {raw!r}. Must be greater than zero.")
    return raw


def _parse_db(section: dict[str, Any]) -> DatabaseConfig:
    name = str(section.get("name", "calsync")).strip()
    if not name:
        raise ConfigError("calsync.db.name must be a non-empty string")

    schema_raw = section.get("schema")
    schema: str | None = None
    if schema_raw is not None:
        if not isinstance(schema_raw, str):
            raise ConfigError("calsync.db.schema must be a string when set")
        schema = schema_raw.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(schema) is None:
            raise ConfigError(
                f"Invalid calsync.db.schema: {schema_raw!r}. Expected a SQL identifier."
            )

    min_size = int(section.get("min_pool_size", 2))
    max_size = int(section.get("max_pool_size", 10))
    if min_size < 1 or max_size < min_size:
        raise ConfigError(
            f"Invalid pool sizes: min_pool_size={min_size}, max_pool_size={max_size}"
        )
    return DatabaseConfig(name=name, schema=schema, min_pool_size=min_size, max_pool_size=max_size)


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid calsync.logging.format: {fmt!r}. Expected 'text' or 'json'.")
    log_root = section.get("log_root")
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=fmt,
        log_root=str(log_root) if log_root else None,
    )


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    policy_raw = str(section.get("deletion_conflict_policy", DeletionConflictPolicy.DROP))
    try:
        policy = DeletionConflictPolicy(policy_raw.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(p.value for p in DeletionConflictPolicy)
        raise ConfigError(
            f"Invalid calsync.sync.deletion_conflict_policy: {policy_raw!r}. "
            f"Expected one of: {allowed}"
        ) from exc

    infer = section.get("infer_deletions", True)
    if not isinstance(infer, bool):
        raise ConfigError("calsync.sync.infer_deletions must be a boolean")

    return SyncConfig(
        timeout_s=_positive_number(section, "timeout_s", 60.0, "calsync.sync.timeout_s"),
        deletion_conflict_policy=policy,
        infer_deletions=infer,
        request_timeout_s=_positive_number(
            section, "request_timeout_s", 20.0, "calsync.sync.request_timeout_s"
        ),
    )


def _parse_push(section: dict[str, Any]) -> PushConfig:
    paths_raw = section.get("paths", list(DEFAULT_PUSH_PATHS))
    if not isinstance(paths_raw, list) or not paths_raw:
        raise ConfigError("calsync.push.paths must be a non-empty list of strings")
    paths: list[str] = []
    for path in paths_raw:
        if not isinstance(path, str) or not path.startswith("/"):
            raise ConfigError(f"Invalid push path {path!r}: must start with '/'")
        paths.append(path)

    interval = _positive_number(
        section, "heartbeat_interval_s", 30.0, "calsync.push.heartbeat_interval_s"
    )
    timeout = _positive_number(
        section, "heartbeat_timeout_s", 10.0, "calsync.push.heartbeat_timeout_s"
    )
    max_bytes = int(
        _positive_number(
            section, "max_buffered_bytes", 1_048_576, "calsync.push.max_buffered_bytes"
        )
    )
    backlog = int(section.get("backlog_limit", 50))
    if backlog < 0:
        raise ConfigError(f"Invalid calsync.push.backlog_limit: {backlog!r}")

    return PushConfig(
        paths=tuple(paths),
        heartbeat_interval_s=interval,
        heartbeat_timeout_s=timeout,
        handshake_timeout_s=_positive_number(
            section, "handshake_timeout_s", 10.0, "calsync.push.handshake_timeout_s"
        ),
        max_buffered_bytes=max_bytes,
        backlog_limit=backlog,
    )


def _parse_remote(section: dict[str, Any]) -> RemoteConfig:
    username = section.get("username")
    password = section.get("password")
    if (username is None) != (password is None):
        raise ConfigError("calsync.remote needs both username and password, or neither")
    return RemoteConfig(username=username, password=password)


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Build a ``CalsyncConfig`` from an already-decoded TOML document."""
    data = resolve_env_vars(data)

    root = data.get("calsync")
    if not isinstance(root, dict):
        raise ConfigError("Missing [calsync] section in config")

    port = root.get("port", 8400)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"Invalid calsync.port: {port!r}")

    cors = root.get("cors_origins", ["http://localhost:5173"])
    if not isinstance(cors, list) or not all(isinstance(o, str) for o in cors):
        raise ConfigError("calsync.cors_origins must be a list of strings")

    return CalsyncConfig(
        host=str(root.get("host", "127.0.0.1")),
        port=port,
        db=_parse_db(_section(root, "db")),
        logging=_parse_logging(_section(root, "logging")),
        sync=_parse_sync(_section(root, "sync")),
        push=_parse_push(_section(root, "push")),
        remote=_parse_remote(_section(root, "remote")),
        cors_origins=list(cors),
    )


def load_config(config_dir: Path) -> CalsyncConfig:
    """Load and validate ``calsync.toml`` from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
