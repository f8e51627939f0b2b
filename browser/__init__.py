"""
Browser module for the privacy enforcement engine.

Connects the engine to a Camoufox (hardened Firefox) browser driven by
Playwright.  Key capabilities:

- **BrowserManager** – browser lifecycle, tab tracking, and wiring of page
  events to the Control Plane.
- **DeclarativeBlocker** – dynamic block-rule table enforced on Playwright
  routes.
- **ProtectionRelay** – two-stage countermeasure injection and live
  reconfiguration of page protections.
- **CountermeasureSuite** – capability-based anti-fingerprinting
  protections (canvas, WebGL, fonts, screen, navigator, WebRTC, timing,
  timezone, battery).

Submodules:
    instance: ``BrowserManager`` class.
    blocker: ``DeclarativeBlocker`` rule engine and route handler.
    relay: ``ProtectionRelay`` and page targets.
    countermeasures: ``CountermeasureSuite`` and ``SandboxPageTarget``.
    payload_scripts: Raw JS payloads injected into pages.
"""

from .instance import BrowserManager

__all__ = ["BrowserManager"]
