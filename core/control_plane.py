"""Background coordinator for the privacy enforcement engine.

:class:`ControlPlane` exclusively owns the mutable engine state -- the
per-tab observation store and the block state (blocklist, whitelist,
current profile) -- and exposes it only through:

* event hooks driven by the browser (:meth:`ControlPlane.on_request`,
  :meth:`ControlPlane.on_tab_removed`, :meth:`ControlPlane.attach_context`,
  :meth:`ControlPlane.on_navigation_committed`), and
* the request/response message surface (:meth:`ControlPlane.handle_message`),
  addressed by a ``type`` discriminator.

Every mutation of the blocklist or whitelist is persisted and then
followed by a full rule resynchronization; whitelist changes also
refresh the countermeasure seed of every attached browser context.  A
rejected synchronization is logged by the synthesizer; the persisted
state is kept as is.

Message surface::

    GET_DOMAINS(tabId)                   -> [domain]
    GET_TAB_STATISTICS(tabId)            -> {totalTrackers, ...}
    TOGGLE_GLOBAL(domain, add?)          -> [domain]
    SWITCH_PRIVACY_PROFILE(profile)      -> {success, currentProfile?}
    GET_PRIVACY_PROFILES()               -> {profiles, current, settings}
    UPDATE_PROTECTION_CONFIG(config)     -> {success}
    GET_THREAT_ATTEMPTS(tabId)           -> [attempt]
    GET_FINGERPRINTING_ATTEMPTS(tabId)   -> [attempt]
    GET_WHITELIST()                      -> {whitelist}
    ADD_TO_WHITELIST(domain)             -> {success, whitelist}
    REMOVE_FROM_WHITELIST(domain)        -> {success, whitelist}
    SET_GLOBAL_BLOCKLIST(domains)        -> {success, blocklist}

Malformed messages and unknown types are answered with
``{"success": False, "error": "..."}`` -- a caller is never left without
a response.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from core.classifier import TrackerClassifier
from core.config import (
    DEFAULT_PROFILE,
    PERSISTED_DEFAULTS,
    PRIVACY_PROFILES,
    EngineSettings,
)
from core.knowledge_base import load_tracker_database
from core.models import TabStatistics, TrackerDatabase
from core.observation import BadgeSink, TabObservationStore
from core.rules import RuleEngine, RuleSynthesizer
from core.storage import SettingsStore
from core.utils import extract_host

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Mapping[str, Any]], Awaitable[Any]]


class MessageError(Exception):
    """A message that cannot be answered: unknown type or bad fields."""


def _require_tab_id(message: Mapping[str, Any]) -> int:
    tab_id = message.get("tabId")
    if isinstance(tab_id, bool) or not isinstance(tab_id, int):
        raise MessageError("tabId is required")
    return tab_id


def _require_domain(message: Mapping[str, Any]) -> str:
    domain = message.get("domain")
    if not isinstance(domain, str) or not domain.strip():
        raise MessageError("domain is required")
    return domain.strip().lower()


class ControlPlane:
    """Owns engine state and answers the message surface.

    Args:
        store: Persisted settings (blocklist, whitelist, profile, toggles).
        rule_engine: The declarative rule engine the synthesizer drives.
        settings: Engine settings (knowledge base source, rule priority).
        relay: Countermeasure relay; defaults to a
            :class:`~browser.relay.ProtectionRelay` over *store*.
        badge_sink: Receives ``(tab_id, BadgeState)`` after each mutation.
    """

    def __init__(
        self,
        store: SettingsStore,
        rule_engine: RuleEngine,
        settings: Optional[EngineSettings] = None,
        relay: Any = None,
        badge_sink: Optional[BadgeSink] = None,
    ) -> None:
        if relay is None:
            from browser.relay import ProtectionRelay
            relay = ProtectionRelay(store)
        self.settings = settings or EngineSettings()
        self.store = store
        self.relay = relay
        self.classifier = TrackerClassifier()
        self.observations = TabObservationStore(
            self.classifier, badge_sink=badge_sink,
        )
        self.synthesizer = RuleSynthesizer(
            rule_engine, priority=self.settings.rule_priority,
        )
        # dicts double as insertion-ordered sets; order fixes rule ids
        self.global_block: Dict[str, None] = {}
        self.whitelist: Dict[str, None] = {}
        self.current_profile: str = DEFAULT_PROFILE
        self.active_tab_id: Optional[int] = None
        self._targets: Dict[int, Any] = {}
        self._database: Optional[TrackerDatabase] = None
        self._handlers: Dict[str, MessageHandler] = {
            "GET_DOMAINS": self._get_domains,
            "GET_TAB_STATISTICS": self._get_tab_statistics,
            "TOGGLE_GLOBAL": self._toggle_global,
            "SWITCH_PRIVACY_PROFILE": self._switch_privacy_profile,
            "GET_PRIVACY_PROFILES": self._get_privacy_profiles,
            "UPDATE_PROTECTION_CONFIG": self._update_protection_config,
            "GET_THREAT_ATTEMPTS": self._get_threat_attempts,
            "GET_FINGERPRINTING_ATTEMPTS": self._get_fingerprinting_attempts,
            "GET_WHITELIST": self._get_whitelist,
            "ADD_TO_WHITELIST": self._add_to_whitelist,
            "REMOVE_FROM_WHITELIST": self._remove_from_whitelist,
            "SET_GLOBAL_BLOCKLIST": self._set_global_blocklist,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load_database(self) -> TrackerDatabase:
        """Load the knowledge base once; later calls reuse it."""
        if self._database is None:
            self._database = await load_tracker_database(
                self.settings.knowledge_base_source,
                timeout=self.settings.knowledge_base_timeout_seconds,
            )
            self.classifier.database = self._database
        return self._database

    async def initialize(self) -> None:
        """Load the knowledge base and persisted state, then sync rules."""
        await self.load_database()
        data = await self.store.get({
            "globalBlock": PERSISTED_DEFAULTS["globalBlock"],
            "whitelist": PERSISTED_DEFAULTS["whitelist"],
            "currentProfile": PERSISTED_DEFAULTS["currentProfile"],
        })
        self.global_block = dict.fromkeys(data["globalBlock"] or [])
        self.whitelist = dict.fromkeys(data["whitelist"] or [])
        profile = data["currentProfile"]
        self.current_profile = (
            profile if profile in PRIVACY_PROFILES else DEFAULT_PROFILE
        )
        await self._resync_rules()
        logger.info(
            "Engine initialized: %d blocked, %d whitelisted, profile=%s",
            len(self.global_block), len(self.whitelist),
            self.current_profile,
        )

    # ------------------------------------------------------------------
    # Browser events
    # ------------------------------------------------------------------

    def on_request(
        self, tab_id: int, url: str, initiator: Optional[str] = None,
    ) -> None:
        """Observe one network request; unparseable URLs are skipped."""
        try:
            host = extract_host(url)
            initiator_host = extract_host(initiator)
        except ValueError:
            return
        if not host:
            return
        self.observations.observe(tab_id, host, initiator_host, url)

    def record_fingerprinting_attempt(
        self,
        tab_id: int,
        method: str,
        url: str,
        details: Optional[str] = None,
    ) -> bool:
        return self.observations.record_fingerprinting_attempt(
            tab_id, method, url, details,
        )

    def on_tab_removed(self, tab_id: int) -> None:
        self.observations.discard(tab_id)
        self._targets.pop(tab_id, None)
        if self.active_tab_id == tab_id:
            self.active_tab_id = None

    def set_active_tab(self, tab_id: Optional[int]) -> None:
        self.active_tab_id = tab_id

    async def attach_context(self, context: Any) -> None:
        """Install the countermeasure init scripts on a browser context."""
        await self.relay.install(context)

    def register_target(self, tab_id: int, target: Any) -> None:
        """Remember the live page of *tab_id* for configuration updates."""
        self._targets[tab_id] = target

    def _reporter_for(self, tab_id: int, target: Any) -> Callable[..., None]:
        def report(method: str, details: Optional[str] = None) -> None:
            self.record_fingerprinting_attempt(
                tab_id, method, target.url, details,
            )
        return report

    async def on_navigation_committed(
        self, tab_id: int, frame_id: int, target: Any,
    ) -> bool:
        """Inject countermeasures after a top-level navigation commits.

        Subframe commits (``frame_id != 0``) are ignored.

        Returns:
            ``True`` if the countermeasure payload was loaded.
        """
        if frame_id != 0:
            return False
        self.register_target(tab_id, target)
        target.reporter = self._reporter_for(tab_id, target)
        return await self.relay.inject(target)

    # ------------------------------------------------------------------
    # Message surface
    # ------------------------------------------------------------------

    async def handle_message(self, message: Mapping[str, Any]) -> Any:
        """Dispatch *message* by its ``type`` and return the response."""
        if not isinstance(message, Mapping):
            return {"success": False, "error": "message must be an object"}
        kind = message.get("type")
        handler = self._handlers.get(kind)
        if handler is None:
            logger.debug("Unrecognized message type: %r", kind)
            return {
                "success": False, "error": f"unknown message type: {kind}",
            }
        try:
            return await handler(message)
        except MessageError as e:
            return {"success": False, "error": str(e)}

    async def _get_domains(self, message: Mapping[str, Any]) -> List[str]:
        return self.observations.get_domains(_require_tab_id(message))

    async def _get_tab_statistics(
        self, message: Mapping[str, Any],
    ) -> Dict[str, int]:
        return self.get_statistics(_require_tab_id(message)).to_dict()

    async def _toggle_global(self, message: Mapping[str, Any]) -> List[str]:
        domain = _require_domain(message)
        add = message.get("add")
        if add is not None and not isinstance(add, bool):
            raise MessageError("add must be a boolean")
        will_add = (domain not in self.global_block) if add is None else add
        if will_add:
            self.global_block[domain] = None
        else:
            self.global_block.pop(domain, None)
        await self._commit_blocklist()
        return list(self.global_block)

    async def _switch_privacy_profile(
        self, message: Mapping[str, Any],
    ) -> Dict[str, Any]:
        profile = message.get("profile")
        if profile not in PRIVACY_PROFILES:
            return {"success": False}
        self.current_profile = profile
        await self.store.set({"currentProfile": profile})
        return {"success": True, "currentProfile": profile}

    async def _get_privacy_profiles(
        self, message: Mapping[str, Any],
    ) -> Dict[str, Any]:
        return {
            "profiles": list(PRIVACY_PROFILES),
            "current": self.current_profile,
            "settings": PRIVACY_PROFILES[self.current_profile].to_wire(),
        }

    async def _update_protection_config(
        self, message: Mapping[str, Any],
    ) -> Dict[str, bool]:
        config = message.get("config")
        if config:
            target = self._targets.get(self.active_tab_id)
            if target is not None:
                await self.relay.forward_update(target, config)
            else:
                logger.debug("No active tab to forward protection config to")
        return {"success": True}

    async def _get_threat_attempts(
        self, message: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        tab_id = _require_tab_id(message)
        return [a.to_dict() for a in self.observations.get_threat_attempts(tab_id)]

    async def _get_fingerprinting_attempts(
        self, message: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        tab_id = _require_tab_id(message)
        return [
            a.to_dict()
            for a in self.observations.get_fingerprinting_attempts(tab_id)
        ]

    async def _get_whitelist(
        self, message: Mapping[str, Any],
    ) -> Dict[str, List[str]]:
        return {"whitelist": list(self.whitelist)}

    async def _add_to_whitelist(
        self, message: Mapping[str, Any],
    ) -> Dict[str, Any]:
        self.whitelist[_require_domain(message)] = None
        await self._commit_whitelist()
        return {"success": True, "whitelist": list(self.whitelist)}

    async def _remove_from_whitelist(
        self, message: Mapping[str, Any],
    ) -> Dict[str, Any]:
        self.whitelist.pop(_require_domain(message), None)
        await self._commit_whitelist()
        return {"success": True, "whitelist": list(self.whitelist)}

    async def _set_global_blocklist(
        self, message: Mapping[str, Any],
    ) -> Dict[str, Any]:
        domains = message.get("domains")
        if not isinstance(domains, list) or not all(
            isinstance(d, str) and d.strip() for d in domains
        ):
            raise MessageError("domains must be a list of domain names")
        self.global_block = dict.fromkeys(d.strip().lower() for d in domains)
        await self._commit_blocklist()
        return {"success": True, "blocklist": list(self.global_block)}

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def get_statistics(self, tab_id: int) -> TabStatistics:
        return self.observations.get_statistics(tab_id, self.global_block)

    async def _commit_blocklist(self) -> None:
        await self.store.set({"globalBlock": list(self.global_block)})
        await self._resync_rules()

    async def _commit_whitelist(self) -> None:
        await self.store.set({"whitelist": list(self.whitelist)})
        await self._resync_rules()
        await self.relay.refresh()

    async def _resync_rules(self) -> bool:
        return await self.synthesizer.synchronize(
            list(self.global_block), list(self.whitelist),
        )
