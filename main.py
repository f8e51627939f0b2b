"""
Privacy Engine - Main Entry Point

Opens one or more URLs in a protected Camoufox browser: tracker hosts are
observed and classified per tab, blocklisted domains are blocked by the
declarative rule engine, and anti-fingerprinting countermeasures are
injected into every non-whitelisted page.  A per-tab report is printed
when all pages have loaded.

Usage:
    python main.py --url https://example.com
    python main.py --url https://a.com --url https://b.com --visible
    python main.py --url https://news.site --block doubleclick.net --profile strict
"""
from dotenv import load_dotenv

# Load environment variables from .env file into os.environ
load_dotenv()

import asyncio
import argparse
import logging
from typing import Dict

from rich import box
from rich.console import Console
from rich.table import Table

from core.config import PRIVACY_PROFILES, EngineSettings
from core.control_plane import ControlPlane
from core.logging_setup import setup_logging
from core.models import BadgeState
from core.storage import SettingsStore
from browser.blocker import DeclarativeBlocker
from browser.instance import BrowserManager

logger = logging.getLogger(__name__)


def build_report(plane: ControlPlane, tabs: Dict[int, str]) -> Table:
    """Build the per-tab statistics table."""
    table = Table(
        title="Per-Tab Privacy Report",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Tab", justify="right")
    table.add_column("URL", style="cyan", no_wrap=True)
    table.add_column("Trackers", justify="right")
    table.add_column("Blocked", justify="right")
    table.add_column("Threats", justify="right")
    table.add_column("Fingerprinting", justify="right")
    table.add_column("Third-party hosts")

    for tab_id, url in tabs.items():
        stats = plane.get_statistics(tab_id)
        hosts = plane.observations.get_domains(tab_id)
        table.add_row(
            str(tab_id),
            url,
            str(stats.total_trackers),
            str(stats.blocked_trackers),
            str(stats.threat_attempts),
            str(stats.fingerprinting_attempts),
            ", ".join(hosts) or "-",
        )
    return table


async def main():
    """
    Main execution flow.

    1. Parses command line arguments and sets up logging.
    2. Initializes the Control Plane (knowledge base, persisted state, rules).
    3. Applies --block / --whitelist / --profile through the message surface.
    4. Launches the browser, visits each URL and prints the report.
    """
    parser = argparse.ArgumentParser(description="Browser privacy enforcement engine")
    parser.add_argument("--url", action="append", default=[], help="URL to open (repeatable)")
    parser.add_argument("--visible", action="store_true", help="Show browser")
    parser.add_argument("--block", action="append", default=[], help="Add a domain to the global blocklist")
    parser.add_argument("--whitelist", action="append", default=[], help="Disable protections on a domain")
    parser.add_argument("--profile", choices=list(PRIVACY_PROFILES), help="Switch privacy profile")
    args = parser.parse_args()

    settings = EngineSettings()
    if args.visible:
        settings.headless = False

    setup_logging(settings.log_level, settings.log_dir)

    def log_badge(tab_id: int, badge: BadgeState) -> None:
        logger.debug("Tab %d badge: %r (%s)", tab_id, badge.text, badge.color)

    store = SettingsStore(settings.state_file)
    blocker = DeclarativeBlocker(max_rules=settings.max_dynamic_rules)
    plane = ControlPlane(store, blocker, settings=settings, badge_sink=log_badge)
    await plane.initialize()

    for domain in args.block:
        await plane.handle_message({"type": "TOGGLE_GLOBAL", "domain": domain, "add": True})
    for domain in args.whitelist:
        await plane.handle_message({"type": "ADD_TO_WHITELIST", "domain": domain})
    if args.profile:
        await plane.handle_message({"type": "SWITCH_PRIVACY_PROFILE", "profile": args.profile})

    if not args.url:
        logger.info("No --url given; state updated, nothing to visit.")
        return

    browser_manager = BrowserManager(
        plane,
        blocker,
        headless=settings.headless,
        timeout=settings.timeout,
    )
    tabs: Dict[int, str] = {}
    try:
        await browser_manager.launch()
        for url in args.url:
            tab_id = await browser_manager.visit(url)
            tabs[tab_id] = url
        Console().print(build_report(plane, tabs))
        logger.info("Requests blocked: %d", blocker.blocked_count)
    except KeyboardInterrupt:
        logger.info("Stopping (KeyboardInterrupt)...")
    finally:
        await browser_manager.close()


def run():
    """Console-script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
