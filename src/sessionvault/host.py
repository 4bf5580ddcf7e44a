"""Extend the host application's own transcript retention.

The host deletes its raw session transcripts after ``cleanupPeriodDays``
(30 by default). Those transcripts are what session memories point to, so
on startup we raise that limit in the host's ``settings.json``.
"""

import json
from pathlib import Path

import structlog

from sessionvault.config import HOST_SETTINGS_PATH

_logger = structlog.get_logger("sessionvault.host")

HOST_RETENTION_KEY = "cleanupPeriodDays"
HOST_RETENTION_DAYS = 36500
# Anything above a year counts as already overridden
OVERRIDDEN_THRESHOLD_DAYS = 365


def _read_settings(settings_path: Path) -> dict:
    if not settings_path.exists():
        return {}
    text = settings_path.read_text()
    if not text.strip():
        return {}
    settings = json.loads(text)
    if not isinstance(settings, dict):
        raise ValueError(f"{settings_path} does not contain a JSON object")
    return settings


def override_host_retention(settings_path: Path | None = None) -> bool:
    """Raise the host's cleanup period, leaving every other setting intact.

    Never lowers an existing larger value. Returns ``False`` (after logging)
    if the settings file cannot be read, parsed or written.
    """
    settings_path = settings_path or HOST_SETTINGS_PATH
    try:
        settings = _read_settings(settings_path)
        current = settings.get(HOST_RETENTION_KEY)
        if isinstance(current, int) and current >= HOST_RETENTION_DAYS:
            return True

        settings[HOST_RETENTION_KEY] = HOST_RETENTION_DAYS
        settings_path.parent.mkdir(parents=True, exist_ok=True)
        settings_path.write_text(json.dumps(settings, indent=2) + "\n")
    except (OSError, ValueError) as exc:
        _logger.warning(
            "host_retention_override_failed", settings_path=str(settings_path), error=str(exc)
        )
        return False

    _logger.info(
        "host_retention_overridden",
        settings_path=str(settings_path),
        days=HOST_RETENTION_DAYS,
    )
    return True


def is_host_retention_overridden(settings_path: Path | None = None) -> bool:
    settings_path = settings_path or HOST_SETTINGS_PATH
    try:
        settings = _read_settings(settings_path)
    except (OSError, ValueError):
        return False
    current = settings.get(HOST_RETENTION_KEY)
    return isinstance(current, int) and current > OVERRIDDEN_THRESHOLD_DAYS
