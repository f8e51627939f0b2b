"""Declarative rule engine enforced at the Playwright route level.

:class:`DeclarativeBlocker` keeps a dynamic table of
:class:`~core.models.DeclarativeRule` objects and aborts every routed
request that an active block rule matches.  The table is only ever
written through :meth:`DeclarativeBlocker.update_dynamic_rules`, which
validates the whole batch before applying any of it: a rejected batch
leaves the table untouched and raises
:class:`~core.rules.RuleEngineError`.

URL filters use two shapes:

* ``*://*.<domain>/*`` -- host pattern: matches ``<domain>`` itself and
  any subdomain, on any scheme and path.
* anything else -- ``*`` wildcard substring match against the full URL.
"""

import functools
import logging
import re
from typing import Dict, List, Optional, Sequence

from playwright.async_api import Request, Route

from core.models import DeclarativeRule
from core.rules import RuleEngineError
from core.utils import domain_matches_any, extract_host

logger = logging.getLogger(__name__)

HOST_FILTER_RE = re.compile(r"^\*://\*\.([a-z0-9.-]+)/\*$", re.IGNORECASE)
VALID_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)*"
    r"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$",
    re.IGNORECASE,
)

# Playwright resource types -> declarative resource types.
PLAYWRIGHT_RESOURCE_TYPES: Dict[str, str] = {
    "script": "script",
    "image": "image",
    "xhr": "xmlhttprequest",
    "fetch": "xmlhttprequest",
    "font": "font",
    "media": "media",
    "stylesheet": "stylesheet",
    "websocket": "websocket",
}


@functools.lru_cache(maxsize=8192)
def _compile_url_filter(url_filter: str) -> re.Pattern:
    """Compile a declarative ``urlFilter`` into a regex.

    Raises:
        RuleEngineError: If the filter is empty or names an invalid host.
    """
    if not url_filter or not url_filter.strip("*"):
        raise RuleEngineError(f"Malformed urlFilter: {url_filter!r}")

    host_match = HOST_FILTER_RE.match(url_filter)
    if host_match:
        domain = host_match.group(1)
        if not VALID_DOMAIN_RE.match(domain):
            raise RuleEngineError(f"Malformed urlFilter: {url_filter!r}")
        return re.compile(
            r"^[a-z][a-z0-9+.-]*://([^/?#@]*@)?([^/?#:]*\.)?"
            + re.escape(domain.lower())
            + r"(:\d+)?([/?#]|$)",
            re.IGNORECASE,
        )

    return re.compile(
        ".*".join(re.escape(part) for part in url_filter.split("*")),
        re.IGNORECASE,
    )


def request_resource_type(request: Request) -> str:
    """Map a Playwright request onto a declarative resource type."""
    resource_type = request.resource_type
    if resource_type == "document":
        try:
            frame = request.frame
            if frame.parent_frame is not None:
                return "sub_frame"
        except Exception:
            # Navigation requests for service workers carry no frame.
            pass
        return "main_frame"
    return PLAYWRIGHT_RESOURCE_TYPES.get(resource_type, "other")


def request_initiator_host(request: Request) -> str:
    """Host of the frame that issued *request*, or ``""`` if unknown."""
    try:
        frame = request.frame
        if request.resource_type == "document" and frame.parent_frame:
            frame = frame.parent_frame
        return extract_host(frame.url)
    except Exception:
        return ""


class DeclarativeBlocker:
    """Dynamic block-rule table plus the Playwright route handler using it.

    Attributes:
        max_rules: Quota for the dynamic rule table.
        enabled: Master switch -- ``False`` lets every request through.
        blocked_count: Requests aborted since construction.
    """

    def __init__(self, max_rules: int = 5000) -> None:
        self.max_rules = max_rules
        self.enabled: bool = True
        self.blocked_count = 0
        self._rules: Dict[int, DeclarativeRule] = {}
        self._patterns: Dict[int, re.Pattern] = {}

    # ------------------------------------------------------------------
    # Rule-engine surface
    # ------------------------------------------------------------------

    async def get_dynamic_rules(self) -> List[DeclarativeRule]:
        return list(self._rules.values())

    async def update_dynamic_rules(
        self,
        remove_rule_ids: Sequence[int] = (),
        add_rules: Sequence[DeclarativeRule] = (),
    ) -> None:
        """Remove then add rules as one all-or-nothing batch.

        Raises:
            RuleEngineError: On a non-positive or duplicate id, a malformed
                URL filter, or when the result would exceed the quota.
        """
        removed = set(remove_rule_ids)
        remaining = {
            rule_id: rule for rule_id, rule in self._rules.items()
            if rule_id not in removed
        }
        compiled: Dict[int, re.Pattern] = {}
        for rule in add_rules:
            if not isinstance(rule.id, int) or rule.id < 1:
                raise RuleEngineError(f"Invalid rule id: {rule.id!r}")
            if rule.id in remaining or rule.id in compiled:
                raise RuleEngineError(f"Duplicate rule id: {rule.id}")
            compiled[rule.id] = _compile_url_filter(rule.condition.url_filter)

        if len(remaining) + len(compiled) > self.max_rules:
            raise RuleEngineError(
                f"Dynamic rule quota exceeded: "
                f"{len(remaining) + len(compiled)} > {self.max_rules}"
            )

        for rule in add_rules:
            remaining[rule.id] = rule
        self._rules = remaining
        self._patterns = {
            rule_id: compiled.get(rule_id) or self._patterns[rule_id]
            for rule_id in remaining
        }

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def match(
        self, url: str, resource_type: str, initiator_host: str = "",
    ) -> Optional[DeclarativeRule]:
        """Return the highest-priority block rule matching the request."""
        best: Optional[DeclarativeRule] = None
        for rule_id, rule in self._rules.items():
            condition = rule.condition
            if resource_type not in condition.resource_types:
                continue
            if initiator_host and domain_matches_any(
                initiator_host, condition.excluded_initiator_domains,
            ):
                continue
            if not self._patterns[rule_id].search(url):
                continue
            if best is None or rule.priority > best.priority:
                best = rule
        return best

    async def handle_route(self, route: Route) -> None:
        """Playwright route handler: abort matched requests, continue others.

        Args:
            route: Playwright ``Route`` for the intercepted request.
        """
        if not self.enabled:
            await route.continue_()
            return

        request = route.request
        rule = self.match(
            request.url,
            request_resource_type(request),
            request_initiator_host(request),
        )
        if rule is not None:
            self.blocked_count += 1
            logger.debug("Blocked %s (rule %d)", request.url, rule.id)
            await route.abort("blockedbyclient")
            return

        await route.continue_()
