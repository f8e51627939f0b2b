"""Tracker classification and threat assessment.

Pure functions over an immutable :class:`~core.models.TrackerDatabase`.
Resolution order for both :meth:`TrackerClassifier.classify` and
:meth:`TrackerClassifier.assess_threat` (first match wins):

1. Exact host match in the database.
2. Containment match: the host contains a known tracker key, or a known
   tracker key contains the host.  This is intentionally loose so that
   subdomains match in both directions; it also means a short key can
   match an unrelated longer host.
3. Keyword heuristics on the lower-cased host (category only).
4. ``unknown`` category.

Threat assessment without a direct or containment match falls back to
the resolved category's ``defaultThreatLevel``, then to ``low``.
"""

from typing import Dict, Optional, Tuple

from core.models import (
    THREAT_LOW,
    UNKNOWN_CATEGORY,
    TrackerDatabase,
    TrackerRecord,
)

# Checked in this order; the first category with a matching keyword wins.
CATEGORY_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "analytics": ("analytics", "tracking", "stats", "metrics", "insights"),
    "advertising": ("ads", "doubleclick", "adsystem", "adnxs", "adsense"),
    "social": ("facebook", "twitter", "linkedin", "pinterest", "instagram"),
    "fingerprinting": ("fingerprint", "captcha", "recaptcha", "maxmind"),
    "cdn": ("cdn", "cloudflare", "amazonaws", "gstatic"),
}


class TrackerClassifier:
    """Classifier bound to one loaded knowledge base.

    Holds no mutable state, so a single instance can be shared by every
    caller in the process.
    """

    def __init__(self, database: Optional[TrackerDatabase] = None) -> None:
        self.database = database or TrackerDatabase.empty()

    def get_tracker_info(self, host: str) -> Optional[TrackerRecord]:
        """Return the record for *host* by exact or containment match."""
        trackers = self.database.trackers
        record = trackers.get(host)
        if record is not None:
            return record
        for tracker_host, info in trackers.items():
            if tracker_host in host or host in tracker_host:
                return info
        return None

    @staticmethod
    def match_keywords(host: str) -> Optional[str]:
        lowered = host.lower()
        for category, keywords in CATEGORY_KEYWORDS.items():
            if any(keyword in lowered for keyword in keywords):
                return category
        return None

    def classify(self, host: str) -> str:
        info = self.get_tracker_info(host)
        if info is not None:
            return info.category
        return self.match_keywords(host) or UNKNOWN_CATEGORY

    def assess_threat(self, host: str) -> str:
        info = self.get_tracker_info(host)
        if info is not None:
            return info.threat_level
        category_default = self.database.categories.get(self.classify(host))
        if category_default is not None:
            return category_default.default_threat_level
        return THREAT_LOW
