"""Built-in sink defaults and how a deployment's settings are layered on top.

``defaults/sink.yaml`` only holds values that are sensible everywhere.  The
commit deadline and conflict attempt count are operational choices with no
safe default, so they (and the identifiers of the deployment) must come from
the user config; :func:`build_sink_config` names whichever are absent.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from iceberg_sink.config.models import SinkConfig
from iceberg_sink.errors import IcebergSinkError

DEFAULTS_FILE = Path(__file__).parent / "defaults" / "sink.yaml"

# (section, key) pairs every deployment sets itself.
REQUIRED_SETTINGS: tuple[tuple[str, str], ...] = (
    ("commit", "group_id"),
    ("commit", "commit_timeout_seconds"),
    ("commit", "commit_max_attempts"),
    ("catalog", "catalog_uri"),
    ("catalog", "warehouse"),
)


class MissingSettingsError(IcebergSinkError, ValueError):
    """The merged config lacks settings that have no built-in value."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Missing required sink settings: {', '.join(missing)}")


def load_defaults(path: str | Path | None = None) -> dict[str, Any]:
    """Load the defaults layer, the packaged ``sink.yaml`` unless *path* is given.

    A defaults file may only contain known sections and must leave the
    required settings to the deployment.
    """
    source = DEFAULTS_FILE if path is None else Path(path)
    if not source.exists():
        msg = f"Defaults file not found at {source}"
        raise FileNotFoundError(msg)
    with source.open() as f:
        data = yaml.safe_load(f) or {}

    unknown = sorted(set(data) - set(SinkConfig.model_fields))
    if unknown:
        msg = f"Unknown sections in defaults file {source}: {', '.join(unknown)}"
        raise ValueError(msg)
    preset = [
        f"{section}.{key}"
        for section, key in REQUIRED_SETTINGS
        if key in (data.get(section) or {})
    ]
    if preset:
        msg = f"Defaults file {source} must not set {', '.join(preset)}"
        raise ValueError(msg)
    return data  # type: ignore[no-any-return]


def overlay(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Layer *overrides* over *base* without mutating either.

    Sections merge key by key; lists such as ``tables`` are replaced whole.
    An explicit ``null`` drops the default so the model's own default applies.
    """
    merged: dict[str, Any] = {**base}
    for key, value in overrides.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = overlay(merged[key], value)
        else:
            merged[key] = value
    return merged


def missing_settings(merged: dict[str, Any]) -> list[str]:
    return [
        f"{section}.{key}"
        for section, key in REQUIRED_SETTINGS
        if (merged.get(section) or {}).get(key) is None
    ]


def build_sink_config(
    overrides: dict[str, Any],
    *,
    defaults: str | Path | None = None,
) -> SinkConfig:
    """Build a validated SinkConfig from the defaults layer plus *overrides*."""
    merged = overlay(load_defaults(defaults), overrides)
    missing = missing_settings(merged)
    if missing:
        raise MissingSettingsError(missing)
    return SinkConfig.model_validate(merged)
