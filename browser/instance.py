"""Browser instance management for the privacy engine.

Provides :class:`BrowserManager` which wraps ``Camoufox`` (a hardened
Firefox fork) via Playwright and wires it to a
:class:`~core.control_plane.ControlPlane`:

* Every routed request is observed for its tab, then handed to the
  :class:`~browser.blocker.DeclarativeBlocker`.
* Each page is a tab with a stable integer id; closing it discards the
  tab's observations.
* The context carries the countermeasure init scripts (CSP bypassed so
  they load everywhere) and a page binding the payload reports
  intercepted fingerprinting reads through.
* Each top-level navigation registers the tab's live page for
  configuration updates.
"""

from __future__ import annotations
from typing import Optional, Dict, Any

from playwright.async_api import BrowserContext, Frame, Page, Route
from browserforge.fingerprints import Screen
from camoufox.async_api import AsyncCamoufox
from .blocker import DeclarativeBlocker
from .payload_scripts import REPORT_BINDING
from .relay import PlaywrightPageTarget
from core.control_plane import ControlPlane
import logging

logger = logging.getLogger(__name__)

# Tab id for requests not tied to a page (service workers, prefetch).
NO_TAB_ID = -1


class BrowserManager:
    """Manages a Camoufox browser whose traffic feeds the control plane.

    Args:
        control_plane: Engine coordinator receiving browser events.
        blocker: Rule engine enforcing the synthesized block rules.
        headless: Whether to run the browser in headless mode.
        timeout: Default navigation timeout in milliseconds.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        blocker: DeclarativeBlocker,
        headless: bool = True,
        timeout: int = 60000,
    ) -> None:
        self.control_plane = control_plane
        self.blocker = blocker
        self.headless = headless
        self.timeout = timeout
        self.browser: Optional[Any] = None
        self.context: Optional[BrowserContext] = None
        self.camoufox: Optional[AsyncCamoufox] = None
        self._tab_ids: Dict[Page, int] = {}
        self._next_tab_id = 1

    async def launch(self) -> "BrowserManager":
        """Launch Camoufox and open the shared browsing context.

        Returns:
            ``self`` for fluent chaining.
        """
        logger.info("Launching Camoufox (Headless: %s)...", self.headless)

        kwargs: Dict[str, Any] = {
            "headless": self.headless,
            "humanize": False,
        }
        # Auto-detected headless screens default to 1024x768.
        if self.headless:
            kwargs["screen"] = Screen(max_width=1920, max_height=1080)
        kwargs["firefox_user_prefs"] = {
            "toolkit.telemetry.enabled": False,
            "datareporting.policy.dataSubmissionEnabled": False,
            "datareporting.healthreport.uploadEnabled": False,
            "browser.shell.checkDefaultBrowser": False,
            # Avoid DNS prefetch leaking hosts the blocker never sees
            "network.dns.disablePrefetch": True,
            "network.prefetch-next": False,
            "network.http.speculative-parallel-limit": 0,
        }

        self.camoufox = AsyncCamoufox(**kwargs)
        self.browser = await self.camoufox.__aenter__()
        self.context = await self.browser.new_context(bypass_csp=True)
        self.context.set_default_navigation_timeout(self.timeout)
        await self.context.expose_binding(
            REPORT_BINDING, self._on_fingerprinting_report,
        )
        await self.control_plane.attach_context(self.context)
        await self.context.route("**/*", self.handle_route)
        self.context.on("page", self.attach_page)
        return self

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------

    def tab_id_for(self, page: Optional[Page]) -> int:
        if page is None:
            return NO_TAB_ID
        return self._tab_ids.get(page, NO_TAB_ID)

    def attach_page(self, page: Page) -> int:
        """Assign *page* a tab id and subscribe to its lifecycle events."""
        if page in self._tab_ids:
            return self._tab_ids[page]
        tab_id = self._next_tab_id
        self._next_tab_id += 1
        self._tab_ids[page] = tab_id
        self.control_plane.set_active_tab(tab_id)

        page.on("framenavigated", self._on_frame_navigated)
        page.on("close", self._on_page_close)
        logger.debug("Tab %d opened", tab_id)
        return tab_id

    def _on_page_close(self, page: Page) -> None:
        tab_id = self._tab_ids.pop(page, None)
        if tab_id is not None:
            self.control_plane.on_tab_removed(tab_id)
            logger.debug("Tab %d closed", tab_id)

    def _on_frame_navigated(self, frame: Frame) -> None:
        page = frame.page
        tab_id = self.tab_id_for(page)
        if tab_id == NO_TAB_ID:
            return
        if frame != page.main_frame:
            return
        self.control_plane.register_target(tab_id, PlaywrightPageTarget(page))

    def _on_fingerprinting_report(
        self, source: Dict[str, Any], method: str, details: Any = None,
    ) -> None:
        """Page binding called by the payload on an intercepted read."""
        page = source.get("page")
        frame = source.get("frame")
        url = getattr(frame, "url", None) or getattr(page, "url", "")
        self.control_plane.record_fingerprinting_attempt(
            self.tab_id_for(page), str(method), url,
            None if details is None else str(details),
        )

    async def new_page(self) -> Page:
        """Open a new tab in the shared context."""
        if self.context is None:
            await self.launch()
        page = await self.context.new_page()
        self.attach_page(page)
        return page

    async def visit(self, url: str, page: Optional[Page] = None) -> int:
        """Navigate *page* (or a fresh tab) to *url*.

        Navigation errors are logged and do not close the tab.

        Returns:
            The tab id of the page used.
        """
        if page is None:
            page = await self.new_page()
        tab_id = self.tab_id_for(page)
        try:
            await page.goto(url, wait_until="load")
        except Exception as e:
            logger.warning("Navigation to %s failed: %s", url, e)
        return tab_id

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    async def handle_route(self, route: Route) -> None:
        """Observe the request for its tab, then enforce block rules."""
        request = route.request
        page: Optional[Page] = None
        initiator: Optional[str] = None
        try:
            frame = request.frame
            page = frame.page
            if request.resource_type != "document":
                initiator = frame.url
            elif frame.parent_frame is not None:
                initiator = frame.parent_frame.url
        except Exception:
            # Service worker requests carry no frame.
            pass
        self.control_plane.on_request(
            self.tab_id_for(page), request.url, initiator,
        )
        await self.blocker.handle_route(route)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Shut down the browser and discard every tab's observations."""
        for tab_id in list(self._tab_ids.values()):
            self.control_plane.on_tab_removed(tab_id)
        self._tab_ids.clear()
        if self.browser:
            try:
                await self.camoufox.__aexit__(None, None, None)
            except Exception as e:
                logger.debug("Error during browser exit: %s", e)
            self.browser = None
            self.context = None
            logger.info("Browser closed.")
