"""Per-tab observation store.

Tracks, for every live tab, the third-party hosts it has contacted, the
fingerprinting attempts reported for it, and the first sightings of
high/critical threat hosts.  State is created lazily on the first
observation for a tab and discarded when the tab closes.

The badge is a synchronous projection of this state: :meth:`badge` is
recomputed after every mutation so the visible indicator always reflects
the last processed event for the tab.
"""

import logging
import time
from typing import Callable, Collection, Dict, List, Optional

from core.classifier import TrackerClassifier
from core.models import (
    ALERT_THREAT_LEVELS,
    BadgeState,
    FingerprintingAttempt,
    TabObservation,
    TabStatistics,
    ThreatAttempt,
)
from core.utils import extract_host

logger = logging.getLogger(__name__)

ALERT_BADGE_COLOR = "#dc2626"
NEUTRAL_BADGE_COLOR = "#D3D3D3"
EMPTY_BADGE = BadgeState(text="")

FINGERPRINTING_CATEGORY = "fingerprinting"
# Method recorded when a known fingerprinting host is contacted.
TRACKER_METHOD = "tracker"

BadgeSink = Callable[[int, BadgeState], None]


def now_ms() -> int:
    return int(time.time() * 1000)


class TabObservationStore:
    """Arena of :class:`~core.models.TabObservation` keyed by tab id.

    Args:
        classifier: Used to assess the threat level of newly seen hosts.
        badge_sink: Optional callback receiving ``(tab_id, BadgeState)``
            after every mutation of a tab.
        clock: Millisecond timestamp source (injectable for tests).
    """

    def __init__(
        self,
        classifier: TrackerClassifier,
        badge_sink: Optional[BadgeSink] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.classifier = classifier
        self.badge_sink = badge_sink
        self.clock = clock
        self._tabs: Dict[int, TabObservation] = {}

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    @staticmethod
    def is_page_tab(tab_id: int) -> bool:
        return isinstance(tab_id, int) and tab_id >= 0

    def observe(
        self,
        tab_id: int,
        host: str,
        initiator_host: str,
        url: str = "",
    ) -> bool:
        """Record a request from *tab_id* to *host*.

        First-party requests (``host == initiator_host``, compared exactly,
        so ``sub.example.com`` loading from ``example.com`` counts as third
        party) and requests from non-tab contexts are ignored.

        Returns:
            ``True`` if the host was seen for the first time on this tab.
        """
        if not self.is_page_tab(tab_id) or not host:
            return False
        if host == initiator_host:
            return False

        tab = self._tabs.setdefault(tab_id, TabObservation())
        is_new = host not in tab.hosts
        if is_new:
            level = self.classifier.assess_threat(host)
            if level in ALERT_THREAT_LEVELS:
                tab.threat_attempts.append(ThreatAttempt(
                    domain=host, url=url, level=level,
                    timestamp=self.clock(),
                ))
                logger.info(
                    "Tab %s contacted %s threat host %s", tab_id, level, host,
                )
            if self.classifier.classify(host) == FINGERPRINTING_CATEGORY:
                self._append_fingerprinting(
                    tab, TRACKER_METHOD, host, url, details=host,
                )
            tab.hosts.add(host)

        self._publish_badge(tab_id)
        return is_new

    def record_fingerprinting_attempt(
        self,
        tab_id: int,
        method: str,
        url: str,
        details: Optional[str] = None,
    ) -> bool:
        """Record a fingerprinting attempt once per method and host.

        Returns:
            ``True`` if the attempt was new for this tab.
        """
        if not self.is_page_tab(tab_id):
            return False
        try:
            host = extract_host(url)
        except ValueError:
            host = url
        tab = self._tabs.setdefault(tab_id, TabObservation())
        recorded = self._append_fingerprinting(
            tab, method, host, url, details,
        )
        if recorded:
            self._publish_badge(tab_id)
        return recorded

    def _append_fingerprinting(
        self,
        tab: TabObservation,
        method: str,
        host: str,
        url: str,
        details: Optional[str] = None,
    ) -> bool:
        key = (method, host)
        if key in tab.fingerprinting_keys:
            return False
        tab.fingerprinting_keys.add(key)
        tab.fingerprinting_attempts.append(FingerprintingAttempt(
            method=method, url=url, details=details, timestamp=self.clock(),
        ))
        return True

    def discard(self, tab_id: int) -> None:
        """Drop every piece of state held for *tab_id*."""
        if self._tabs.pop(tab_id, None) is not None:
            logger.debug("Discarded observation state for tab %s", tab_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __contains__(self, tab_id: int) -> bool:
        return tab_id in self._tabs

    def get_domains(self, tab_id: int) -> List[str]:
        tab = self._tabs.get(tab_id)
        return sorted(tab.hosts) if tab else []

    def get_threat_attempts(self, tab_id: int) -> List[ThreatAttempt]:
        tab = self._tabs.get(tab_id)
        return list(tab.threat_attempts) if tab else []

    def get_fingerprinting_attempts(
        self, tab_id: int,
    ) -> List[FingerprintingAttempt]:
        tab = self._tabs.get(tab_id)
        return list(tab.fingerprinting_attempts) if tab else []

    def get_statistics(
        self, tab_id: int, blocked: Collection[str] = (),
    ) -> TabStatistics:
        """Summarise a tab; ``blocked_trackers`` counts hosts in *blocked*."""
        tab = self._tabs.get(tab_id)
        if tab is None:
            return TabStatistics()
        return TabStatistics(
            total_trackers=len(tab.hosts),
            fingerprinting_attempts=len(tab.fingerprinting_attempts),
            threat_attempts=len(tab.threat_attempts),
            blocked_trackers=sum(1 for h in tab.hosts if h in blocked),
        )

    def badge(self, tab_id: int) -> BadgeState:
        """Project the badge for *tab_id*.

        Any fingerprinting or threat attempt shows the fingerprinting
        count on the alert colour; otherwise the host count on the
        neutral colour; otherwise an empty badge.
        """
        tab = self._tabs.get(tab_id)
        if tab is None:
            return EMPTY_BADGE
        if tab.fingerprinting_attempts or tab.threat_attempts:
            return BadgeState(
                text=str(len(tab.fingerprinting_attempts)),
                color=ALERT_BADGE_COLOR,
            )
        if tab.hosts:
            return BadgeState(
                text=str(len(tab.hosts)), color=NEUTRAL_BADGE_COLOR,
            )
        return EMPTY_BADGE

    def _publish_badge(self, tab_id: int) -> None:
        if self.badge_sink is not None:
            self.badge_sink(tab_id, self.badge(tab_id))
