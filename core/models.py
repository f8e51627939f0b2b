"""Data model for the privacy enforcement engine.

Two families of types live here:

* Knowledge-base records parsed from external JSON
  (:class:`TrackerRecord`, :class:`CategoryDefault`,
  :class:`TrackerDatabase`).  These are Pydantic models so that a
  malformed database is rejected as a whole at load time.
* Engine-internal records (attempt logs, statistics, declarative rules,
  countermeasure configuration).  These are dataclasses with explicit
  ``to_dict`` methods producing the camelCase wire format used on the
  message surface.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

THREAT_LOW = "low"
THREAT_MEDIUM = "medium"
THREAT_HIGH = "high"
THREAT_CRITICAL = "critical"

# Threat levels that produce a threat-attempt record on first sight.
ALERT_THREAT_LEVELS = frozenset({THREAT_HIGH, THREAT_CRITICAL})

UNKNOWN_CATEGORY = "unknown"


# ---------------------------------------------------------------------------
# Knowledge base (external, read-only)
# ---------------------------------------------------------------------------

class DataCollection(BaseModel):
    """What kinds of data a tracker is known to collect."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    personal_info: bool = Field(default=False, alias="personalInfo")
    behavioral_data: bool = Field(default=False, alias="behavioralData")
    device_fingerprinting: bool = Field(
        default=False, alias="deviceFingerprinting",
    )
    location_tracking: bool = Field(default=False, alias="locationTracking")


class TrackerRecord(BaseModel):
    """Knowledge-base entry for one tracker host.

    Attributes:
        category: Tracker category (``advertising``, ``analytics``, ...).
        threat_level: ``low`` / ``medium`` / ``high`` / ``critical``.
        company: Operating company, when known.
        description: Free-text description.
        fingerprinting_methods: Fingerprinting techniques the host uses.
        data_collection: Flags for the kinds of data collected.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    category: str
    threat_level: str = Field(alias="threatLevel")
    company: Optional[str] = None
    description: str = ""
    fingerprinting_methods: List[str] = Field(
        default_factory=list, alias="fingerprintingMethods",
    )
    data_collection: DataCollection = Field(
        default_factory=DataCollection, alias="dataCollection",
    )


class CategoryDefault(BaseModel):
    """Category-level fallback used when a host has no direct record."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    description: str = ""
    default_threat_level: str = Field(alias="defaultThreatLevel")
    common_methods: List[str] = Field(
        default_factory=list, alias="commonMethods",
    )


class TrackerDatabase(BaseModel):
    """The whole knowledge base: host records plus category defaults.

    ``trackers`` preserves file order; containment matching walks it in
    that order and the first hit wins.
    """

    model_config = ConfigDict(frozen=True)

    trackers: Dict[str, TrackerRecord] = Field(default_factory=dict)
    categories: Dict[str, CategoryDefault] = Field(default_factory=dict)

    @classmethod
    def empty(cls) -> "TrackerDatabase":
        return cls(trackers={}, categories={})


# ---------------------------------------------------------------------------
# Per-tab observation records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FingerprintingAttempt:
    """A fingerprinting technique observed on a tab."""

    method: str
    url: str
    timestamp: int
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"method": self.method, "url": self.url,
                "timestamp": self.timestamp}
        if self.details is not None:
            data["details"] = self.details
        return data


@dataclass(frozen=True)
class ThreatAttempt:
    """First sighting of a high/critical host on a tab."""

    domain: str
    url: str
    level: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TabStatistics:
    total_trackers: int = 0
    fingerprinting_attempts: int = 0
    threat_attempts: int = 0
    blocked_trackers: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalTrackers": self.total_trackers,
            "fingerprintingAttempts": self.fingerprinting_attempts,
            "threatAttempts": self.threat_attempts,
            "blockedTrackers": self.blocked_trackers,
        }


@dataclass(frozen=True)
class BadgeState:
    """Visible per-tab indicator: text plus background colour.

    ``color`` is ``None`` when the badge is cleared.
    """

    text: str
    color: Optional[str] = None


# ---------------------------------------------------------------------------
# Declarative rules
# ---------------------------------------------------------------------------

# Resource types every synthesized block rule applies to.
BLOCKED_RESOURCE_TYPES = (
    "script", "image", "xmlhttprequest", "sub_frame", "font", "media",
)


@dataclass(frozen=True)
class RuleCondition:
    url_filter: str
    resource_types: tuple = BLOCKED_RESOURCE_TYPES
    excluded_initiator_domains: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "urlFilter": self.url_filter,
            "resourceTypes": list(self.resource_types),
            "excludedInitiatorDomains": list(
                self.excluded_initiator_domains
            ),
        }


@dataclass(frozen=True)
class DeclarativeRule:
    """One block rule in the live rule table.

    ``id`` is the 1-based position of the blocked domain in the blocklist
    at synthesis time; ids are not stable across resynchronizations.
    """

    id: int
    condition: RuleCondition
    priority: int = 1
    action: str = "block"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "priority": self.priority,
            "action": {"type": self.action},
            "condition": self.condition.to_dict(),
        }


# ---------------------------------------------------------------------------
# Countermeasure configuration
# ---------------------------------------------------------------------------

@dataclass
class CountermeasureConfig:
    """Per-page toggles for the anti-fingerprinting patches.

    Wire names are camelCase (``userAgent``); every other flag shares its
    Python name.  Updates merge over the existing values, never replace
    them wholesale.
    """

    canvas: bool = True
    webgl: bool = True
    fonts: bool = True
    screen: bool = True
    webrtc: bool = True
    timing: bool = True
    user_agent: bool = True
    timezone: bool = True

    _WIRE_NAMES = {"user_agent": "userAgent"}

    @classmethod
    def wire_name(cls, attr: str) -> str:
        return cls._WIRE_NAMES.get(attr, attr)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "CountermeasureConfig":
        config = cls()
        config.merge(data or {})
        return config

    def merge(self, update: Mapping[str, Any]) -> None:
        """Merge known flags from *update*; unknown keys are ignored."""
        for f in fields(self):
            key = self.wire_name(f.name)
            if key in update:
                setattr(self, f.name, bool(update[key]))

    def to_dict(self) -> Dict[str, bool]:
        return {
            self.wire_name(f.name): getattr(self, f.name)
            for f in fields(self)
        }


@dataclass
class TabObservation:
    """Mutable per-tab state, created on first observation."""

    hosts: set = field(default_factory=set)
    fingerprinting_attempts: List[FingerprintingAttempt] = field(
        default_factory=list,
    )
    threat_attempts: List[ThreatAttempt] = field(default_factory=list)
    # (method, host) pairs already recorded as fingerprinting attempts.
    fingerprinting_keys: set = field(default_factory=set)
