"""Configuration for the syncsnap agent.

This module defines the configuration used by the CLI, the HTTP server
and the snapshot pipeline. Values come from ``SYNCSNAP_*`` environment
variables with sensible defaults.
"""

from __future__ import annotations

import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from syncsnap.agent.snapshot.pipeline import PipelineSettings

logger = logging.getLogger(__name__)

ENV_PREFIX = "SYNCSNAP_"


def get_data_dir() -> Path:
    """Get the data directory for syncsnap.

    Returns:
        Path to ~/.syncsnap or the SYNCSNAP_DATA_DIR override.
    """
    override = os.environ.get(f"{ENV_PREFIX}DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".syncsnap"


def syncthing_config_candidates(data_dir: Path) -> list[Path]:
    """Locations where a Syncthing config.xml is usually found."""
    home = Path.home()
    return [
        home / ".config" / "syncthing" / "config.xml",
        home / ".config" / "Syncthing" / "config.xml",
        home / ".local" / "state" / "syncthing" / "config.xml",
        data_dir / "syncthing" / "config.xml",
    ]


def read_syncthing_api_key(candidates: list[Path]) -> str:
    """Read the Syncthing API key from the first config.xml that has one.

    Args:
        candidates: Paths to try, in order.

    Returns:
        The API key, or an empty string if none was found.
    """
    for path in candidates:
        try:
            root = ET.parse(path).getroot()
        except OSError:
            continue
        except ET.ParseError as e:
            logger.warning("Ignoring unreadable Syncthing config %s: %s", path, e)
            continue
        element = root.find("gui/apikey")
        if element is not None and element.text and element.text.strip():
            logger.debug("Using Syncthing API key from %s", path)
            return element.text.strip()
    return ""


def _env(name: str, default: str) -> str:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


@dataclass
class AgentConfig:
    """Configuration of the local agent.

    Attributes:
        api_host: Interface the HTTP API binds to.
        api_port: Port the HTTP API listens on.
        syncthing_url: Base URL of the Syncthing REST API.
        syncthing_api_key: API key sent as X-API-Key to Syncthing.
        cloud_url: Base URL of the cloud API snapshots are published to.
        log_level: Logging level name.
        log_path: Log file path, or None to log to stdout only.
        scan_timeout: Seconds to wait for the folder to stop scanning.
        poll_interval: Seconds between folder status polls.
        run_timeout: Ceiling in seconds for a whole background run.
        upload_attempts: Maximum number of upload attempts.
        initial_backoff: Backoff in seconds before the second attempt.
        retention: Seconds a finished operation stays queryable.
        request_timeout: HTTP timeout for collaborator calls.
    """

    api_host: str = "127.0.0.1"
    api_port: int = 29999
    syncthing_url: str = "http://127.0.0.1:8384"
    syncthing_api_key: str = ""
    cloud_url: str = "http://localhost:5000/api"
    log_level: str = "INFO"
    log_path: Path | None = None
    scan_timeout: float = 120.0
    poll_interval: float = 0.5
    run_timeout: float = 300.0
    upload_attempts: int = 3
    initial_backoff: float = 1.0
    retention: float = 30.0
    request_timeout: float = 30.0
    data_dir: Path = field(default_factory=get_data_dir)

    def __post_init__(self) -> None:
        """Normalize URLs and validate numeric settings."""
        self.syncthing_url = self.syncthing_url.rstrip("/")
        self.cloud_url = self.cloud_url.rstrip("/")
        self.log_level = self.log_level.upper()
        if self.upload_attempts < 1:
            raise ValueError("upload_attempts must be at least 1")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

    @classmethod
    def from_env(cls) -> AgentConfig:
        """Build a configuration from SYNCSNAP_* environment variables.

        The Syncthing API key falls back to the one stored in Syncthing's
        own config.xml when SYNCSNAP_SYNCTHING_API_KEY is not set.
        """
        data_dir = get_data_dir()
        api_key = _env("SYNCTHING_API_KEY", "")
        if not api_key:
            api_key = read_syncthing_api_key(syncthing_config_candidates(data_dir))

        log_path = _env("LOG_PATH", "")
        return cls(
            api_host=_env("API_HOST", "127.0.0.1"),
            api_port=int(_env("API_PORT", "29999")),
            syncthing_url=_env("SYNCTHING_URL", "http://127.0.0.1:8384"),
            syncthing_api_key=api_key,
            cloud_url=_env("CLOUD_URL", "http://localhost:5000/api"),
            log_level=_env("LOG_LEVEL", "INFO"),
            log_path=Path(log_path) if log_path else None,
            scan_timeout=float(_env("SCAN_TIMEOUT", "120")),
            poll_interval=float(_env("POLL_INTERVAL", "0.5")),
            run_timeout=float(_env("RUN_TIMEOUT", "300")),
            upload_attempts=int(_env("UPLOAD_ATTEMPTS", "3")),
            initial_backoff=float(_env("INITIAL_BACKOFF", "1.0")),
            retention=float(_env("RETENTION", "30")),
            request_timeout=float(_env("REQUEST_TIMEOUT", "30")),
            data_dir=data_dir,
        )

    def pipeline_settings(self) -> PipelineSettings:
        """Get the pipeline timing settings from this configuration."""
        from syncsnap.agent.snapshot.pipeline import PipelineSettings

        return PipelineSettings(
            scan_timeout=self.scan_timeout,
            poll_interval=self.poll_interval,
            upload_attempts=self.upload_attempts,
            initial_backoff=self.initial_backoff,
        )
