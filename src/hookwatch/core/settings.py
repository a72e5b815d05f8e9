"""Settings Management Module.

Handles loading, saving, and accessing hookwatch configuration.
Persists configuration to data/hookwatch.json; any field can be
overridden with a HOOKWATCH_<FIELD> environment variable.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

# Constants
SETTINGS_FILE = Path("data/hookwatch.json")
ENV_PREFIX = "HOOKWATCH_"


class HookwatchSettings(BaseModel):
    """Global hookwatch settings."""

    # Monitoring
    poll_interval_seconds: float = Field(30.0, gt=0)
    batch_concurrency: int = Field(4, ge=1)
    trend_days: int = Field(7, ge=1)
    top_performers: int = Field(5, ge=1)

    # Outbound calls
    default_timeout_ms: int = Field(30000, gt=0)
    default_retry_attempts: int = Field(0, ge=0)
    delivery_retry_attempts: int = Field(3, ge=0)
    user_agent: str = "Hookwatch-Webhook/1.0"

    # Storage and logging
    log_db_path: str = "data/webhook_logs.db"
    log_level: str = "INFO"
    log_file: str = "hookwatch.log"

    class Config:
        validate_assignment = True


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect HOOKWATCH_* values that name a settings field."""
    environ = os.environ if environ is None else environ
    overrides = {}
    for name in HookwatchSettings.model_fields:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            overrides[name] = value
    return overrides


class SettingsManager:
    """Manages loading and saving of settings."""

    def __init__(
        self,
        path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.path = Path(path) if path else SETTINGS_FILE
        self._environ = environ
        self._settings: Optional[HookwatchSettings] = None
        self._load()

    def _load(self):
        """Load settings from JSON (if present), then apply env overrides."""
        data: Dict[str, Any] = {}
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
                HookwatchSettings(**data)
            except (TypeError, ValueError) as e:
                logger.warning(f"Error loading settings from {self.path}: {e}. Using defaults.")
                data = {}

        overrides = env_overrides(self._environ)
        try:
            self._settings = HookwatchSettings(**{**data, **overrides})
        except ValidationError as e:
            logger.warning(f"Ignoring invalid {ENV_PREFIX}* overrides: {e}")
            self._settings = HookwatchSettings(**data)

    def get(self) -> HookwatchSettings:
        """Get current settings."""
        if not self._settings:
            self._load()
        return self._settings

    def reload(self) -> HookwatchSettings:
        self._settings = None
        return self.get()

    def save(self, new_settings: HookwatchSettings = None):
        """Save settings to file."""
        if new_settings:
            self._settings = new_settings

        # Ensure directory exists
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self.path.write_text(
            self.get().model_dump_json(indent=4),
            encoding="utf-8"
        )


# Global Instance
settings_manager = SettingsManager()
