"""Engine configuration for the privacy enforcement engine.

Central configuration module powered by Pydantic v2.  Settings are loaded
from environment variables (with ``.env`` file support).  The static
privacy-profile preset table and the defaults applied to persisted
settings also live here so that every component agrees on them.

Key exports:
    EngineSettings: Root settings model (instantiate once at startup).
    PrivacyProfile: One blocking-preference preset.
    PRIVACY_PROFILES: Preset table keyed by profile name.
    PERSISTED_DEFAULTS: Defaults for every flat persisted-settings key.
    BASE_DIR / CONFIG_DIR / LOGS_DIR / DATA_DIR: Canonical project paths.
"""

# pylint: disable=no-member

import logging
from pathlib import Path
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Base Paths
# ---------------------------------------------------------------------------
BASE_DIR: Path = Path(__file__).parent.parent
"""Project root directory (parent of ``core/``)."""

CONFIG_DIR: Path = BASE_DIR / "config"
"""Directory holding runtime state files (persisted settings)."""

LOGS_DIR: Path = BASE_DIR / "logs"
"""Directory for log output files."""

DATA_DIR: Path = Path(__file__).parent / "data"
"""Bundled read-only data (the default tracker knowledge base)."""

logger: logging.Logger = logging.getLogger(__name__)


class PrivacyProfile(BaseModel):
    """Blocking preferences for one privacy preset.

    Attributes:
        block_advertising: Block advertising networks.
        block_analytics: Block analytics / telemetry hosts.
        block_social: Block social-network widgets and pixels.
        block_fingerprinting: Block fingerprinting services.
        allow_cdn: Let CDN hosts through even when they look like trackers.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    block_advertising: bool = Field(alias="blockAdvertising")
    block_analytics: bool = Field(alias="blockAnalytics")
    block_social: bool = Field(alias="blockSocial")
    block_fingerprinting: bool = Field(alias="blockFingerprinting")
    allow_cdn: bool = Field(alias="allowCDN")

    def to_wire(self) -> Dict[str, bool]:
        """Return the camelCase mapping used on the message surface."""
        return self.model_dump(by_alias=True)


MINIMAL_PROFILE = "minimal"
BALANCED_PROFILE = "balanced"
STRICT_PROFILE = "strict"
DEFAULT_PROFILE = BALANCED_PROFILE

PRIVACY_PROFILES: Dict[str, PrivacyProfile] = {
    MINIMAL_PROFILE: PrivacyProfile(
        block_advertising=True,
        block_analytics=False,
        block_social=False,
        block_fingerprinting=True,
        allow_cdn=True,
    ),
    BALANCED_PROFILE: PrivacyProfile(
        block_advertising=True,
        block_analytics=True,
        block_social=False,
        block_fingerprinting=True,
        allow_cdn=True,
    ),
    STRICT_PROFILE: PrivacyProfile(
        block_advertising=True,
        block_analytics=True,
        block_social=True,
        block_fingerprinting=True,
        allow_cdn=False,
    ),
}

# Persisted settings are stored flatly; any subset may be missing.
PROTECTION_SETTING_KEYS: Dict[str, str] = {
    "canvas": "canvasProtection",
    "webgl": "webglProtection",
    "fonts": "fontProtection",
    "screen": "screenProtection",
    "webrtc": "webrtcProtection",
    "timing": "timingProtection",
    "userAgent": "userAgentProtection",
    "timezone": "timezoneProtection",
}

PERSISTED_DEFAULTS: Dict[str, Any] = {
    "globalBlock": [],
    "whitelist": [],
    "currentProfile": DEFAULT_PROFILE,
    **{key: True for key in PROTECTION_SETTING_KEYS.values()},
}


class EngineSettings(BaseSettings):
    """Root configuration model for the privacy enforcement engine.

    All fields can be set via environment variables or a ``.env`` file.

    Section overview:
        * **Core** -- log level and log directory.
        * **Browser** -- headless mode and navigation timeout.
        * **Knowledge base** -- where the tracker database comes from.
        * **Rules** -- dynamic rule quota and priority.
        * **State** -- persisted settings file.
    """

    # Core
    log_level: str = "INFO"
    log_dir: str = str(LOGS_DIR)

    # Browser
    headless: bool = True
    # Navigation timeout in ms
    timeout: int = 60000

    # Knowledge base: a file path or an http(s) URL
    knowledge_base_source: str = str(DATA_DIR / "trackers.json")
    knowledge_base_timeout_seconds: float = 10.0

    # Declarative rules
    max_dynamic_rules: int = 5000
    rule_priority: int = 1

    # Persisted settings (blocklist, whitelist, profile, toggles)
    state_file: str = str(CONFIG_DIR / "engine_state.json")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
