"""Settings storage for publisher configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

from ebs_publisher.exceptions import MissingConfigurationError, PreconditionError


SETTINGS_PATH = Path(
    os.environ.get(
        "EBS_PUBLISHER_SETTINGS_PATH",
        Path.home() / ".config" / "ebs-publisher" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_POLL_INTERVAL_SECONDS = 2.0
DEFAULT_POLL_TIMEOUT_SECONDS = 3600.0
DEFAULT_SETTLE_DELAY_SECONDS = 10.0

REQUIRED_KEYS = ("access_key", "secret_access_key", "account_number")

DEFAULT_SETTINGS: dict[str, Any] = {
    "access_key": None,
    "secret_access_key": None,
    "account_number": None,
    "availability_zone": None,
    "delete_on_termination": True,
    "snapshot": False,
    "poll_interval_seconds": DEFAULT_POLL_INTERVAL_SECONDS,
    "poll_timeout_seconds": DEFAULT_POLL_TIMEOUT_SECONDS,
    "settle_delay_seconds": DEFAULT_SETTLE_DELAY_SECONDS,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Optional[Path] = None) -> None:
    path = path or SETTINGS_PATH
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise PreconditionError(
            f"Could not read settings file {path}: {error}.",
            "Fix or remove the file and try again.",
        ) from error
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value


def validate_required(values: dict[str, Any], keys: Iterable[str] = REQUIRED_KEYS) -> None:
    """Raise MissingConfigurationError listing every key without a value."""
    missing = [key for key in keys if values.get(key) in (None, "")]
    if missing:
        raise MissingConfigurationError(missing)


@dataclass(frozen=True)
class PublisherConfig:
    """Resolved configuration for one publish run."""

    access_key: str
    secret_access_key: str
    account_number: str
    availability_zone: Optional[str] = None
    delete_on_termination: bool = True
    snapshot: bool = False
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_timeout_seconds: Optional[float] = DEFAULT_POLL_TIMEOUT_SECONDS
    settle_delay_seconds: float = DEFAULT_SETTLE_DELAY_SECONDS

    @property
    def owner_id(self) -> str:
        """Account number as the EC2 API expects it (no dashes)."""
        return str(self.account_number).replace("-", "")

    def with_default_zone(self, zone: str) -> PublisherConfig:
        """Fill in the availability zone when none was configured."""
        if self.availability_zone:
            return self
        return PublisherConfig(**{**self.__dict__, "availability_zone": zone})

    @classmethod
    def from_values(cls, values: dict[str, Any]) -> PublisherConfig:
        validate_required(values)
        timeout = values.get("poll_timeout_seconds", DEFAULT_POLL_TIMEOUT_SECONDS)
        return cls(
            access_key=values["access_key"],
            secret_access_key=values["secret_access_key"],
            account_number=str(values["account_number"]),
            availability_zone=values.get("availability_zone") or None,
            delete_on_termination=bool(values.get("delete_on_termination", True)),
            snapshot=bool(values.get("snapshot", False)),
            poll_interval_seconds=float(
                values.get("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)
            ),
            poll_timeout_seconds=None if timeout is None else float(timeout),
            settle_delay_seconds=float(
                values.get("settle_delay_seconds", DEFAULT_SETTLE_DELAY_SECONDS)
            ),
        )


def load_config(path: Optional[Path] = None, **overrides: Any) -> PublisherConfig:
    """Load the settings file, apply overrides and build a PublisherConfig."""
    load_settings(path)
    for key, value in overrides.items():
        if value is not None:
            set_setting(key, value)
    return PublisherConfig.from_values(settings_store.values)
