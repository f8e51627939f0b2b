"""Countermeasure delivery and live reconfiguration.

:class:`ProtectionRelay` is the isolated-world half of the pipeline.  It
reads the persisted protection toggles and the whitelist, and delivers
the countermeasures in one of two ways:

* Browser contexts (:meth:`ProtectionRelay.install`) get the payload and a
  host-gated configuration seed as init scripts, which run at document
  start in every page before page scripts do.  Whitelist changes register
  a fresh seed (:meth:`ProtectionRelay.refresh`); the last one wins.
* Other page targets (:meth:`ProtectionRelay.inject`) are checked against
  the whitelist on each top-level navigation, then seeded and loaded, in
  that order.

After activation, configuration updates are forwarded into the page as
typed broadcast messages; the payload merges them and re-applies its
protections.  The relay and the page never share memory: everything
crosses the boundary through a target object.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from playwright.async_api import BrowserContext, Page

from browser.payload_scripts import (
    PAGE_PROTECTIONS_PAYLOAD,
    build_update_message,
    get_config_seed_script,
)
from core.config import PERSISTED_DEFAULTS, PROTECTION_SETTING_KEYS
from core.models import CountermeasureConfig
from core.storage import SettingsStore
from core.utils import domain_matches_any, extract_host

logger = logging.getLogger(__name__)


class ConfigTarget(Protocol):
    """A live page that accepts configuration updates."""

    url: str

    async def post_message(self, message: Mapping[str, Any]) -> None:
        ...


class PageTarget(ConfigTarget, Protocol):
    """A page the relay seeds and loads the payload into itself."""

    reporter: Any

    async def seed_config(self, config: Mapping[str, Any]) -> None:
        ...

    async def load_payload(self) -> None:
        ...


class PlaywrightPageTarget:
    """:class:`ConfigTarget` backed by a Playwright ``Page``.

    The payload itself arrives through the context init scripts; this
    target only carries updates into the page's main world.
    """

    def __init__(self, page: Page) -> None:
        self.page = page

    @property
    def url(self) -> str:
        return self.page.url

    async def post_message(self, message: Mapping[str, Any]) -> None:
        await self.page.evaluate(
            "message => window.postMessage(message, '*')", dict(message),
        )


class ProtectionRelay:
    """Decides whether a page gets countermeasures and delivers them.

    Args:
        store: Persisted settings (protection toggles and whitelist).
    """

    def __init__(self, store: SettingsStore) -> None:
        self.store = store
        self.contexts: List[BrowserContext] = []

    async def _read_state(self) -> Tuple[List[str], CountermeasureConfig]:
        keys = ["whitelist", *PROTECTION_SETTING_KEYS.values()]
        data = await self.store.get(
            {key: PERSISTED_DEFAULTS[key] for key in keys}
        )
        whitelist: List[str] = list(data.get("whitelist") or [])
        config: Dict[str, bool] = {
            flag: bool(data[key])
            for flag, key in PROTECTION_SETTING_KEYS.items()
        }
        return whitelist, CountermeasureConfig.from_dict(config)

    async def resolve_config(
        self, url: str,
    ) -> Optional[CountermeasureConfig]:
        """Return the configuration for *url*, or ``None`` if whitelisted.

        Raises:
            ValueError: If *url* cannot be parsed.
        """
        whitelist, config = await self._read_state()
        host = extract_host(url)
        if host and domain_matches_any(host, whitelist):
            logger.info("Protections disabled on whitelisted site: %s", host)
            return None
        return config

    async def build_seed_script(self) -> str:
        """Init script seeding the current config, gated on the whitelist."""
        whitelist, config = await self._read_state()
        return get_config_seed_script(config.to_dict(), whitelist)

    # ------------------------------------------------------------------
    # Browser contexts
    # ------------------------------------------------------------------

    async def install(self, context: BrowserContext) -> None:
        """Register the payload and the current seed on *context*."""
        await context.add_init_script(PAGE_PROTECTIONS_PAYLOAD)
        await context.add_init_script(await self.build_seed_script())
        self.contexts.append(context)
        logger.debug("Anti-fingerprinting init scripts registered")

    async def refresh(self) -> int:
        """Register a fresh seed on every installed context.

        Pages already loaded keep the seed they started with; the new seed
        applies from their next navigation.

        Returns:
            The number of contexts updated.
        """
        if not self.contexts:
            return 0
        script = await self.build_seed_script()
        updated = 0
        for context in list(self.contexts):
            try:
                await context.add_init_script(script)
            except Exception as e:
                logger.debug("Seed refresh skipped for closed context: %s", e)
                self.contexts.remove(context)
                continue
            updated += 1
        return updated

    # ------------------------------------------------------------------
    # Page targets
    # ------------------------------------------------------------------

    async def inject(self, target: PageTarget) -> bool:
        """Run both injection stages against *target*.

        Failures (restricted pages, closed targets, unparseable URLs) are
        contained here: logged at debug level and reported as ``False``.

        Returns:
            ``True`` if the payload was loaded.
        """
        try:
            config = await self.resolve_config(target.url)
            if config is None:
                return False
            await target.seed_config(config.to_dict())
            await target.load_payload()
        except Exception as e:
            logger.debug("Countermeasure injection skipped: %s", e)
            return False
        logger.debug("Anti-fingerprinting protections injected")
        return True

    async def forward_update(
        self, target: ConfigTarget, config: Mapping[str, Any],
    ) -> bool:
        """Broadcast a configuration update into *target*'s page context.

        The config shape is not validated here; the payload ignores keys
        it does not know.
        """
        try:
            await target.post_message(build_update_message(config))
        except Exception as e:
            logger.debug("Protection config update not delivered: %s", e)
            return False
        return True
