"""Capability-based anti-fingerprinting countermeasures.

In-process counterpart of :data:`browser.payload_scripts.PAGE_PROTECTIONS_PAYLOAD`.
Instead of mutating global prototypes, every fingerprintable browser
primitive is held as a *capability handle* on :class:`PageCapabilities`,
and each protection in :class:`CountermeasureSuite` is a named,
independently toggleable wrapper around one of those handles.

Contract shared with the JavaScript payload:

* A protection whose flag is off is a no-op.  Turning a flag off later
  does not unwrap a capability that was already protected.
* Every protection wraps the *original* handle captured on first
  application, so :meth:`CountermeasureSuite.apply_all` can be invoked any
  number of times without stacking wrappers.
* Each protection runs guarded: one failing patch never prevents the
  others from being applied.
* Intercepted fingerprinting reads are passed to an optional reporter,
  once per method.

:class:`SandboxPageTarget` implements the relay's page-target contract
against a :class:`PageCapabilities` object, so the full two-stage
injection and live reconfiguration flow can run without a browser.
"""

import base64
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from browser.payload_scripts import (
    COMMON_LANGUAGES,
    COMMON_PLATFORM,
    COMMON_RESOLUTIONS,
    COMMON_USER_AGENT,
    CONFIG_GLOBAL,
    PROTOCOL_VERSION,
    TASKBAR_HEIGHT,
    TIMING_OFFSET_MAX,
    TIMING_REROLL_MS,
    UPDATE_MESSAGE_TYPE,
    WEBGL_SPOOFED_PARAMETERS,
)
from core.models import CountermeasureConfig

logger = logging.getLogger(__name__)

Reporter = Callable[[str, Optional[str]], None]

# WebGL parameter enums queried by fingerprinting scripts.
GL_VENDOR = 0x1F00
GL_RENDERER = 0x1F01
GL_VERSION = 0x1F02
GL_SHADING_LANGUAGE_VERSION = 0x8B8C

WEBGL_SPOOFED_BY_ENUM: Dict[int, str] = {
    GL_VENDOR: WEBGL_SPOOFED_PARAMETERS["VENDOR"],
    GL_RENDERER: WEBGL_SPOOFED_PARAMETERS["RENDERER"],
    GL_VERSION: WEBGL_SPOOFED_PARAMETERS["VERSION"],
    GL_SHADING_LANGUAGE_VERSION: WEBGL_SPOOFED_PARAMETERS[
        "SHADING_LANGUAGE_VERSION"
    ],
}
WEBGL_PARAMETER_NAMES: Dict[int, str] = {
    GL_VENDOR: "VENDOR",
    GL_RENDERER: "RENDERER",
    GL_VERSION: "VERSION",
    GL_SHADING_LANGUAGE_VERSION: "SHADING_LANGUAGE_VERSION",
}


class CapabilityBlocked(Exception):
    """Raised (or used to reject) when a protection has disabled an API."""


# ---------------------------------------------------------------------------
# Capability handles
# ---------------------------------------------------------------------------

@dataclass
class PropertyDescriptor:
    getter: Callable[[], Any]
    configurable: bool = True


class PropertyBag:
    """Object whose properties carry JavaScript-style configurability.

    Redefining a non-configurable property raises :class:`TypeError`,
    mirroring ``Object.defineProperty`` on a locked browser object.
    """

    def __init__(
        self,
        values: Optional[Mapping[str, Any]] = None,
        non_configurable: Tuple[str, ...] = (),
    ) -> None:
        self._descriptors: Dict[str, PropertyDescriptor] = {}
        for name, value in (values or {}).items():
            self._descriptors[name] = PropertyDescriptor(
                getter=lambda v=value: v,
                configurable=name not in non_configurable,
            )

    def descriptor(self, name: str) -> Optional[PropertyDescriptor]:
        return self._descriptors.get(name)

    def define_property(
        self, name: str, getter: Callable[[], Any], configurable: bool = True,
    ) -> None:
        current = self._descriptors.get(name)
        if current is not None and not current.configurable:
            raise TypeError(f"Cannot redefine property: {name}")
        self._descriptors[name] = PropertyDescriptor(getter, configurable)

    def __getitem__(self, name: str) -> Any:
        return self._descriptors[name].getter()

    def get(self, name: str, default: Any = None) -> Any:
        descriptor = self._descriptors.get(name)
        return descriptor.getter() if descriptor else default


class CanvasSurface:
    """A 2D canvas backed by an RGBA pixel buffer."""

    def __init__(
        self, width: int, height: int, pixels: Optional[bytes] = None,
    ) -> None:
        self.width = width
        self.height = height
        size = width * height * 4
        self.pixels = bytearray(pixels if pixels is not None else size)
        if len(self.pixels) != size:
            raise ValueError(
                f"Expected {size} bytes of RGBA data, got {len(self.pixels)}"
            )

    def put_image_data(self, data: bytes) -> None:
        self.pixels[:] = data


def _read_image_data(surface: CanvasSurface) -> bytearray:
    return bytearray(surface.pixels)


def _encode_data_url(surface: CanvasSurface) -> str:
    return "data:image/x-rgba;base64," + base64.b64encode(
        bytes(surface.pixels)
    ).decode("ascii")


class PeerConnection:
    """Minimal peer connection exposing data-channel creation."""

    def __init__(self, config: Optional[Mapping[str, Any]] = None) -> None:
        self.config = dict(config or {})
        self.channels: List[str] = []

    def create_data_channel(self, label: str) -> str:
        self.channels.append(label)
        return label


async def _grant_user_media(**constraints: Any) -> Dict[str, Any]:
    return {"constraints": constraints, "tracks": ["audio", "video"]}


async def _read_battery() -> Dict[str, Any]:
    return {"charging": True, "level": 0.87}


@dataclass
class PageCapabilities:
    """The fingerprintable primitives of one page context.

    Every callable field is a handle that protections may replace with a
    wrapper; the property bags behave like ``screen`` and ``navigator``.
    """

    get_image_data: Callable[[CanvasSurface], bytearray] = _read_image_data
    to_data_url: Callable[[CanvasSurface], str] = _encode_data_url
    webgl_parameters: Dict[int, Any] = field(default_factory=lambda: {
        GL_VENDOR: "NVIDIA Corporation",
        GL_RENDERER: "NVIDIA GeForce RTX 4090/PCIe/SSE2",
        GL_VERSION: "WebGL 1.0 (OpenGL ES 2.0 Chromium)",
        GL_SHADING_LANGUAGE_VERSION: "WebGL GLSL ES 1.0",
        0x0D33: 16384,  # MAX_TEXTURE_SIZE
    })
    get_parameter: Optional[Callable[[int], Any]] = None
    measure_text: Callable[[str], Tuple[int, int]] = (
        lambda text: (len(text) * 8, 16)
    )
    screen: PropertyBag = field(default_factory=lambda: PropertyBag({
        "width": 3440, "height": 1440,
        "availWidth": 3440, "availHeight": 1400,
    }))
    navigator: PropertyBag = field(default_factory=lambda: PropertyBag({
        "userAgent": "Mozilla/5.0 (X11; Linux x86_64; rv:135.0) "
                     "Gecko/20100101 Firefox/135.0",
        "platform": "Linux x86_64",
        "language": "de-DE",
        "languages": ("de-DE", "de", "en"),
    }))
    peer_connection: Callable[..., PeerConnection] = PeerConnection
    get_user_media: Callable[..., Any] = _grant_user_media
    get_battery: Optional[Callable[[], Any]] = _read_battery
    performance_now: Callable[[], float] = (
        lambda: time.perf_counter() * 1000.0
    )
    get_time: Callable[[], float] = lambda: time.time() * 1000.0
    timezone_offset: Callable[[], int] = lambda: -120
    timezone_name: Callable[[], str] = lambda: "Europe/Berlin"

    def __post_init__(self) -> None:
        if self.get_parameter is None:
            self.get_parameter = self.webgl_parameters.get


# ---------------------------------------------------------------------------
# Protections
# ---------------------------------------------------------------------------

def _unit_delta(rng: random.Random) -> int:
    return rng.randint(-1, 1)


def add_canvas_noise(data: bytearray, rng: random.Random) -> bytearray:
    """Perturb every RGB channel by -1, 0 or +1; alpha is untouched."""
    for i in range(0, len(data) - 3, 4):
        for channel in range(i, i + 3):
            data[channel] = max(0, min(255, data[channel] + _unit_delta(rng)))
    return data


class CountermeasureSuite:
    """Named, individually guarded protections over :class:`PageCapabilities`.

    Args:
        capabilities: Handles of the page context to protect.
        config: Initial configuration (copied; later updates merge in).
        rng: Randomness source; fresh draws are made on every protected
            read where the protection calls for it.
        monotonic: Seconds clock driving the timing-offset re-roll.
        reporter: Receives ``(method, details)`` the first time a protected
            read of each method is intercepted.
    """

    # Applied in this order by apply_all().
    PROTECTIONS: Tuple[str, ...] = (
        "canvas", "webgl", "fonts", "screen", "userAgent",
        "webrtc", "timing", "timezone", "battery",
    )

    def __init__(
        self,
        capabilities: PageCapabilities,
        config: Optional[CountermeasureConfig] = None,
        rng: Optional[random.Random] = None,
        monotonic: Callable[[], float] = time.monotonic,
        reporter: Optional[Reporter] = None,
    ) -> None:
        self.caps = capabilities
        self.config = CountermeasureConfig.from_dict(
            config.to_dict() if config else None
        )
        self.rng = rng or random.Random()
        self.monotonic = monotonic
        self.reporter = reporter
        self.reported: Dict[str, Optional[str]] = {}
        self.applied: Dict[str, bool] = {}
        self.failures: Dict[str, str] = {}
        self.resolution: Optional[Dict[str, int]] = None
        self._timing_offset = 0.0
        self._offset_rolled_at = 0.0

    # -- orchestration -------------------------------------------------

    def apply_all(self) -> None:
        """Apply every protection; failures are recorded, never raised."""
        for name in self.PROTECTIONS:
            method = getattr(self, f"protect_{name.lower()}")
            try:
                method()
            except Exception as e:
                self.failures[name] = str(e)
                logger.debug("%s protection failed: %s", name, e)

    def handle_message(self, message: Mapping[str, Any]) -> bool:
        """Merge a broadcast configuration update and re-apply everything.

        Returns:
            ``True`` if *message* was a configuration update for this
            protocol version.
        """
        if (
            not isinstance(message, Mapping)
            or message.get("type") != UPDATE_MESSAGE_TYPE
            or message.get("version") != PROTOCOL_VERSION
        ):
            return False
        self.config.merge(message.get("config") or {})
        self.apply_all()
        return True

    def _should_apply(self, name: str, enabled: bool = True) -> bool:
        return enabled and not self.applied.get(name)

    def _report(self, method: str, details: Optional[str] = None) -> None:
        if method in self.reported:
            return
        self.reported[method] = details
        if self.reporter is None:
            return
        try:
            self.reporter(method, details)
        except Exception as e:
            logger.debug("Fingerprinting report for %s dropped: %s", method, e)

    # -- individual protections ----------------------------------------

    def protect_canvas(self) -> None:
        if not self._should_apply("canvas", self.config.canvas):
            return
        original_read = self.caps.get_image_data
        original_encode = self.caps.to_data_url
        rng = self.rng

        def get_image_data(surface: CanvasSurface) -> bytearray:
            self._report("canvas", "getImageData")
            return add_canvas_noise(original_read(surface), rng)

        def to_data_url(surface: CanvasSurface) -> str:
            self._report("canvas", "toDataURL")
            if surface.width and surface.height:
                noisy = add_canvas_noise(original_read(surface), rng)
                surface.put_image_data(noisy)
            return original_encode(surface)

        self.caps.get_image_data = get_image_data
        self.caps.to_data_url = to_data_url
        self.applied["canvas"] = True

    def protect_webgl(self) -> None:
        if not self._should_apply("webgl", self.config.webgl):
            return
        original = self.caps.get_parameter

        def get_parameter(parameter: int) -> Any:
            if parameter in WEBGL_SPOOFED_BY_ENUM:
                self._report("webgl", WEBGL_PARAMETER_NAMES[parameter])
                return WEBGL_SPOOFED_BY_ENUM[parameter]
            return original(parameter)

        self.caps.get_parameter = get_parameter
        self.applied["webgl"] = True

    def protect_fonts(self) -> None:
        if not self._should_apply("fonts", self.config.fonts):
            return
        original = self.caps.measure_text
        rng = self.rng

        def measure_text(text: str) -> Tuple[int, int]:
            width, height = original(text)
            if text and len(text) < 20:
                return width + _unit_delta(rng), height + _unit_delta(rng)
            return width, height

        self.caps.measure_text = measure_text
        self.applied["fonts"] = True

    def protect_screen(self) -> None:
        if not self._should_apply("screen", self.config.screen):
            return
        self.resolution = dict(self.rng.choice(COMMON_RESOLUTIONS))
        width, height = self.resolution["width"], self.resolution["height"]
        _pin_properties(self.caps.screen, {
            "width": width,
            "height": height,
            "availWidth": width,
            "availHeight": height - TASKBAR_HEIGHT,
        })
        self.applied["screen"] = True

    def protect_useragent(self) -> None:
        if not self._should_apply("userAgent", self.config.user_agent):
            return
        _pin_properties(self.caps.navigator, {
            "userAgent": COMMON_USER_AGENT,
            "platform": COMMON_PLATFORM,
            "languages": tuple(COMMON_LANGUAGES),
            "language": COMMON_LANGUAGES[0],
        })
        self.applied["userAgent"] = True

    def protect_webrtc(self) -> None:
        if not self._should_apply("webrtc", self.config.webrtc):
            return
        original_factory = self.caps.peer_connection

        def _blocked_channel(*args: Any, **kwargs: Any) -> None:
            self._report("webrtc", "createDataChannel")
            raise CapabilityBlocked("WebRTC data channels blocked for privacy")

        def peer_connection(*args: Any, **kwargs: Any) -> PeerConnection:
            pc = original_factory(*args, **kwargs)
            pc.create_data_channel = _blocked_channel
            return pc

        async def get_user_media(*args: Any, **kwargs: Any) -> Any:
            self._report("webrtc", "getUserMedia")
            raise CapabilityBlocked("Media access blocked for privacy")

        self.caps.peer_connection = peer_connection
        self.caps.get_user_media = get_user_media
        self.applied["webrtc"] = True

    def protect_timing(self) -> None:
        if not self._should_apply("timing", self.config.timing):
            return
        original_now = self.caps.performance_now
        original_time = self.caps.get_time
        self._reroll_offset()

        def performance_now() -> int:
            return int(original_now() + self._current_offset())

        def get_time() -> int:
            return int(original_time() + self._current_offset())

        self.caps.performance_now = performance_now
        self.caps.get_time = get_time
        self.applied["timing"] = True

    def protect_timezone(self) -> None:
        if not self._should_apply("timezone", self.config.timezone):
            return
        self.caps.timezone_offset = lambda: 0
        self.caps.timezone_name = lambda: "UTC"
        self.applied["timezone"] = True

    def protect_battery(self) -> None:
        if not self._should_apply("battery"):
            return
        if self.caps.get_battery is not None:
            async def get_battery() -> Any:
                self._report("battery", "getBattery")
                raise CapabilityBlocked("Battery API blocked for privacy")

            self.caps.get_battery = get_battery
        self.applied["battery"] = True

    # -- timing helpers --------------------------------------------------

    def _reroll_offset(self) -> None:
        self._timing_offset = self.rng.random() * TIMING_OFFSET_MAX
        self._offset_rolled_at = self.monotonic()

    def _current_offset(self) -> float:
        if self.monotonic() - self._offset_rolled_at >= TIMING_REROLL_MS / 1000:
            self._reroll_offset()
        return self._timing_offset


def _pin_properties(bag: PropertyBag, values: Mapping[str, Any]) -> None:
    """Pin each property unless it exists and is non-configurable."""
    for name, value in values.items():
        descriptor = bag.descriptor(name)
        if descriptor is None or descriptor.configurable:
            bag.define_property(name, lambda v=value: v, configurable=True)


# ---------------------------------------------------------------------------
# In-process page target
# ---------------------------------------------------------------------------

class SandboxPageTarget:
    """Page target hosting the countermeasure suite in-process.

    Speaks the same narrow contract as a real page: a configuration
    snapshot is seeded onto the page globals, the payload reads it once
    when loaded, and later updates arrive only as broadcast messages.

    Attributes:
        url: The page URL the relay checks against the whitelist.
        capabilities: Primitives the payload protects.
        globals: The page's global scope (receives the seeded config).
        suite: The activated suite, or ``None`` before payload load.
        reporter: Handed to the suite on payload load.
    """

    def __init__(
        self,
        url: str,
        capabilities: Optional[PageCapabilities] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.url = url
        self.capabilities = capabilities or PageCapabilities()
        self.globals: Dict[str, Any] = {}
        self.suite: Optional[CountermeasureSuite] = None
        self.messages: List[Dict[str, Any]] = []
        self.reporter: Optional[Reporter] = None
        self._rng = rng

    async def seed_config(self, config: Mapping[str, Any]) -> None:
        self.globals[CONFIG_GLOBAL] = dict(config)

    async def load_payload(self) -> None:
        if self.suite is not None:
            return
        self.suite = CountermeasureSuite(
            self.capabilities,
            CountermeasureConfig.from_dict(self.globals.get(CONFIG_GLOBAL)),
            rng=self._rng,
            reporter=self.reporter,
        )
        self.suite.apply_all()

    async def post_message(self, message: Mapping[str, Any]) -> None:
        self.messages.append(dict(message))
        if self.suite is not None:
            self.suite.handle_message(message)
