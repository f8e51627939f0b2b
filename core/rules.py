"""Declarative block-rule synthesis and synchronization.

The synthesizer owns the live dynamic rule table of a declarative rule
engine outright.  Every synchronization resets the table and rebuilds it
from the current blocklist and whitelist:

1. read the engine's current rules and collect every id;
2. remove all of them in one call;
3. add the freshly built rule set in one call.

Rule ``i`` (1-based) blocks ``blocklist[i - 1]`` for
:data:`~core.models.BLOCKED_RESOURCE_TYPES`, with the whitelist snapshot
as excluded initiator domains.  Between steps 2 and 3 no custom rule is
active.

Concurrent synchronizations are not serialized: if two run interleaved,
whichever finishes last decides the final table, even when it was issued
first.
"""

import logging
from typing import List, Optional, Protocol, Sequence

from core.models import DeclarativeRule, RuleCondition

logger = logging.getLogger(__name__)


class RuleEngineError(Exception):
    """Raised by a rule engine that rejects a rule update batch."""


class RuleEngine(Protocol):
    """The subset of a declarative rule engine the synthesizer drives."""

    async def get_dynamic_rules(self) -> List[DeclarativeRule]:
        ...

    async def update_dynamic_rules(
        self,
        remove_rule_ids: Sequence[int] = (),
        add_rules: Sequence[DeclarativeRule] = (),
    ) -> None:
        ...


def domain_url_filter(domain: str) -> str:
    """URL filter blocking *domain* and its subdomains on any scheme."""
    return f"*://*.{domain}/*"


def build_rules(
    blocklist: Sequence[str],
    whitelist: Sequence[str] = (),
    priority: int = 1,
) -> List[DeclarativeRule]:
    """Build the block rule set for *blocklist*, ids starting at 1."""
    excluded = tuple(whitelist)
    return [
        DeclarativeRule(
            id=index,
            priority=priority,
            condition=RuleCondition(
                url_filter=domain_url_filter(domain),
                excluded_initiator_domains=excluded,
            ),
        )
        for index, domain in enumerate(blocklist, start=1)
    ]


class RuleSynthesizer:
    """Reset-and-rebuild synchronizer for a :class:`RuleEngine`.

    Attributes:
        engine: The rule engine whose dynamic table this synthesizer owns.
        priority: Priority stamped on every synthesized rule.
        generation: Count of successful synchronizations.
        last_error: The most recent rejection, or ``None``.
    """

    def __init__(self, engine: RuleEngine, priority: int = 1) -> None:
        self.engine = engine
        self.priority = priority
        self.generation = 0
        self.last_error: Optional[Exception] = None

    async def synchronize(
        self,
        blocklist: Sequence[str],
        whitelist: Sequence[str] = (),
    ) -> bool:
        """Rebuild the engine's rule table from *blocklist*/*whitelist*.

        Rejections are logged and swallowed; the caller's persisted state
        is never rolled back, so the blocklist and the active rule table
        may diverge until the next successful call.

        Returns:
            ``True`` if the new table was installed.
        """
        blocklist = list(blocklist)
        whitelist = list(whitelist)
        try:
            existing = await self.engine.get_dynamic_rules()
            remove_ids = [rule.id for rule in existing]
            if remove_ids:
                await self.engine.update_dynamic_rules(
                    remove_rule_ids=remove_ids,
                )
            rules = build_rules(blocklist, whitelist, self.priority)
            if rules:
                await self.engine.update_dynamic_rules(add_rules=rules)
        except RuleEngineError as e:
            self.last_error = e
            logger.warning("Failed to update blocking rules: %s", e)
            return False

        self.last_error = None
        self.generation += 1
        logger.debug(
            "Rule generation %d installed: %d block rules, %d exceptions",
            self.generation, len(blocklist), len(whitelist),
        )
        return True
