"""Configuration loading from environment variables and profilenotes.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".profilenotes"
_CONFIG_FILENAME = "profilenotes.toml"


@dataclass
class StorageConfig:
    """Persisted key-value store configuration."""

    path: Path | None = _DEFAULT_HOME / "storage.json"
    quota_bytes: int | None = None


@dataclass
class LogsConfig:
    """Debug log pipeline configuration."""

    debounce_ms: int = 100
    max_entries: int = 1000


@dataclass
class BridgeConfig:
    """Observer bridge configuration."""

    timeout_ms: int = 2000


@dataclass
class AnnotatorConfig:
    """Annotation engine configuration."""

    debounce_ms: int = 100


@dataclass
class ServerConfig:
    """HTTP observer endpoint configuration."""

    host: str = "127.0.0.1"
    port: int = 9321


@dataclass
class NotesConfig:
    """Top-level profilenotes configuration."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    logs: LogsConfig = field(default_factory=LogsConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    annotator: AnnotatorConfig = field(default_factory=AnnotatorConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    pid_file: Path = _DEFAULT_HOME / "observer.pid"
    log_level: str = "INFO"


def _optional_int(value) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def load_config(config_path: Path | None = None) -> NotesConfig:
    """Load configuration from environment variables and optional profilenotes.toml.

    Priority: environment variables > profilenotes.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.profilenotes/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    storage_data = file_data.get("storage", {})
    logs_data = file_data.get("logs", {})
    bridge_data = file_data.get("bridge", {})
    annotator_data = file_data.get("annotator", {})
    server_data = file_data.get("server", {})

    storage_path = os.getenv("PN_STORAGE_PATH", storage_data.get("path"))

    config = NotesConfig(
        storage=StorageConfig(
            path=Path(storage_path).expanduser() if storage_path else StorageConfig.path,
            quota_bytes=_optional_int(
                os.getenv("PN_STORAGE_QUOTA", storage_data.get("quota_bytes"))
            ),
        ),
        logs=LogsConfig(
            debounce_ms=int(os.getenv("PN_LOG_DEBOUNCE_MS", logs_data.get("debounce_ms", 100))),
            max_entries=int(logs_data.get("max_entries", 1000)),
        ),
        bridge=BridgeConfig(
            timeout_ms=int(os.getenv("PN_BRIDGE_TIMEOUT_MS", bridge_data.get("timeout_ms", 2000))),
        ),
        annotator=AnnotatorConfig(
            debounce_ms=int(
                os.getenv("PN_SCAN_DEBOUNCE_MS", annotator_data.get("debounce_ms", 100))
            ),
        ),
        server=ServerConfig(
            host=server_data.get("host", "127.0.0.1"),
            port=int(os.getenv("PN_SERVER_PORT", server_data.get("port", 9321))),
        ),
        log_level=os.getenv("PN_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
