import random

import pytest

from browser.countermeasures import (
    GL_RENDERER,
    GL_VENDOR,
    CanvasSurface,
    CapabilityBlocked,
    CountermeasureSuite,
    PageCapabilities,
    PropertyBag,
    SandboxPageTarget,
    add_canvas_noise,
)
from browser.payload_scripts import (
    COMMON_RESOLUTIONS,
    COMMON_USER_AGENT,
    CONFIG_GLOBAL,
    TASKBAR_HEIGHT,
    build_update_message,
)
from core.models import CountermeasureConfig


@pytest.fixture
def caps():
    return PageCapabilities()


def make_suite(caps, **flags):
    config = CountermeasureConfig.from_dict(flags)
    return CountermeasureSuite(caps, config, rng=random.Random(7))


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestCanvas:

    def test_noise_bounded_and_alpha_untouched(self):
        data = bytearray([100, 100, 100, 255] * 64)
        noisy = add_canvas_noise(bytearray(data), random.Random(1))
        for i, (before, after) in enumerate(zip(data, noisy)):
            if i % 4 == 3:
                assert after == before
            else:
                assert abs(after - before) <= 1

    def test_noise_clamped_to_byte_range(self):
        noisy = add_canvas_noise(bytearray([0, 255, 0, 0] * 32), random.Random(3))
        assert all(0 <= b <= 255 for b in noisy)

    def test_readback_differs_between_calls(self, caps):
        make_suite(caps).apply_all()
        surface = CanvasSurface(16, 16, bytes([128] * 16 * 16 * 4))
        assert caps.get_image_data(surface) != caps.get_image_data(surface)

    def test_to_data_url_writes_noise_back(self, caps):
        make_suite(caps).apply_all()
        original = bytes([128] * 8 * 8 * 4)
        surface = CanvasSurface(8, 8, original)
        assert caps.to_data_url(surface).startswith("data:image/")
        assert bytes(surface.pixels) != original

    def test_disabled(self, caps):
        original = caps.get_image_data
        suite = make_suite(caps, canvas=False)
        suite.apply_all()
        assert caps.get_image_data is original
        assert "canvas" not in suite.applied


class TestWebGL:

    def test_spoofed_strings(self, caps):
        make_suite(caps).apply_all()
        assert caps.get_parameter(GL_VENDOR) == "Intel Inc."
        assert caps.get_parameter(GL_RENDERER) == "Intel Iris OpenGL Engine"

    def test_other_parameters_pass_through(self, caps):
        make_suite(caps).apply_all()
        assert caps.get_parameter(0x0D33) == 16384


class TestFonts:

    def test_short_text_perturbed_within_one(self, caps):
        make_suite(caps).apply_all()
        widths = {caps.measure_text("mmmmmlli")[0] for _ in range(50)}
        assert widths <= {63, 64, 65}
        assert len(widths) > 1

    def test_long_text_untouched(self, caps):
        make_suite(caps).apply_all()
        text = "x" * 40
        assert caps.measure_text(text) == (320, 16)


class TestScreen:

    def test_pinned_to_common_resolution(self, caps):
        suite = make_suite(caps)
        suite.apply_all()
        assert suite.resolution in COMMON_RESOLUTIONS
        assert caps.screen["width"] == suite.resolution["width"]
        assert caps.screen["availHeight"] == suite.resolution["height"] - TASKBAR_HEIGHT

    def test_stable_for_page_lifetime(self, caps):
        suite = make_suite(caps)
        suite.apply_all()
        first = (caps.screen["width"], caps.screen["height"])
        suite.apply_all()
        suite.handle_message(build_update_message({"screen": True}))
        assert (caps.screen["width"], caps.screen["height"]) == first

    def test_non_configurable_property_kept(self):
        caps = PageCapabilities(screen=PropertyBag(
            {"width": 3440, "height": 1440, "availWidth": 3440, "availHeight": 1400},
            non_configurable=("width",),
        ))
        suite = make_suite(caps)
        suite.apply_all()
        assert caps.screen["width"] == 3440
        assert caps.screen["height"] == suite.resolution["height"]
        assert "screen" not in suite.failures


class TestNavigatorIdentity:

    def test_pinned(self, caps):
        make_suite(caps).apply_all()
        assert caps.navigator["userAgent"] == COMMON_USER_AGENT
        assert caps.navigator["platform"] == "Win32"
        assert caps.navigator["language"] == "en-US"
        assert caps.navigator["languages"] == ("en-US", "en")

    def test_disabled(self, caps):
        make_suite(caps, userAgent=False).apply_all()
        assert caps.navigator["platform"] == "Linux x86_64"


class TestWebRTC:

    def test_data_channel_blocked(self, caps):
        make_suite(caps).apply_all()
        pc = caps.peer_connection({"iceServers": []})
        with pytest.raises(CapabilityBlocked):
            pc.create_data_channel("leak")

    @pytest.mark.asyncio
    async def test_user_media_rejected(self, caps):
        make_suite(caps).apply_all()
        with pytest.raises(CapabilityBlocked):
            await caps.get_user_media(audio=True)

    @pytest.mark.asyncio
    async def test_disabled(self, caps):
        make_suite(caps, webrtc=False).apply_all()
        assert caps.peer_connection().create_data_channel("ok") == "ok"
        assert (await caps.get_user_media(video=True))["tracks"]


class TestTiming:

    def test_offset_bounded_and_integral(self):
        caps = PageCapabilities(performance_now=lambda: 1000.0, get_time=lambda: 5000.0)
        make_suite(caps).apply_all()
        now = caps.performance_now()
        assert isinstance(now, int)
        assert 1000 <= now < 1010
        assert 5000 <= caps.get_time() < 5010

    def test_offset_rerolled_after_interval(self):
        caps = PageCapabilities(performance_now=lambda: 1000.0)
        clock = FakeClock()
        rng = random.Random(11)
        suite = CountermeasureSuite(caps, rng=rng, monotonic=clock)
        suite.apply_all()
        first_offset = suite._timing_offset
        clock.now = 10.0
        caps.performance_now()
        assert suite._timing_offset == first_offset
        clock.now = 30.0
        caps.performance_now()
        assert suite._timing_offset != first_offset


class TestTimezoneAndBattery:

    def test_timezone_pinned_to_utc(self, caps):
        make_suite(caps).apply_all()
        assert caps.timezone_offset() == 0
        assert caps.timezone_name() == "UTC"

    @pytest.mark.asyncio
    async def test_battery_always_blocked(self, caps):
        # No flag disables the battery protection.
        make_suite(caps, canvas=False, webgl=False, timing=False).apply_all()
        with pytest.raises(CapabilityBlocked):
            await caps.get_battery()

    def test_missing_battery_api(self):
        caps = PageCapabilities(get_battery=None)
        suite = make_suite(caps)
        suite.apply_all()
        assert caps.get_battery is None
        assert suite.applied["battery"] is True


class TestSuiteContract:

    def test_reapply_does_not_stack_wrappers(self, caps):
        suite = make_suite(caps)
        suite.apply_all()
        wrapped = caps.get_parameter
        suite.apply_all()
        assert caps.get_parameter is wrapped

    def test_failure_isolated(self, caps):
        def broken():
            raise RuntimeError("boom")

        suite = make_suite(caps)
        suite.protect_screen = broken
        suite.apply_all()
        assert suite.failures["screen"] == "boom"
        assert "screen" in suite.failures
        assert suite.applied["webgl"] is True
        assert suite.applied["battery"] is True

    def test_update_enables_disabled_protection(self, caps):
        suite = make_suite(caps, webgl=False)
        suite.apply_all()
        assert caps.get_parameter(GL_VENDOR) == "NVIDIA Corporation"
        assert suite.handle_message(build_update_message({"webgl": True})) is True
        assert caps.get_parameter(GL_VENDOR) == "Intel Inc."

    def test_disabling_later_does_not_unwrap(self, caps):
        suite = make_suite(caps)
        suite.apply_all()
        suite.handle_message(build_update_message({"webgl": False}))
        assert suite.config.webgl is False
        assert caps.get_parameter(GL_VENDOR) == "Intel Inc."

    @pytest.mark.parametrize("message", [
        {"type": "OTHER", "version": 1, "config": {"webgl": True}},
        {"type": "PRIVACY_SHIELD_UPDATE_CONFIG", "version": 2, "config": {"webgl": True}},
        "PRIVACY_SHIELD_UPDATE_CONFIG",
    ])
    def test_foreign_messages_ignored(self, caps, message):
        suite = make_suite(caps, webgl=False)
        suite.apply_all()
        assert suite.handle_message(message) is False
        assert suite.config.webgl is False

    def test_unknown_config_keys_ignored(self, caps):
        suite = make_suite(caps)
        suite.handle_message(build_update_message({"audio": False, "canvas": False}))
        assert suite.config.canvas is False
        assert not hasattr(suite.config, "audio")


class TestReporting:

    def make_reporting_suite(self, caps, calls, **flags):
        return CountermeasureSuite(
            caps, CountermeasureConfig.from_dict(flags), rng=random.Random(7),
            reporter=lambda method, details: calls.append((method, details)),
        )

    def test_intercepted_reads_reported_once_per_method(self, caps):
        calls = []
        self.make_reporting_suite(caps, calls).apply_all()
        surface = CanvasSurface(2, 2, bytes([9] * 16))
        caps.to_data_url(surface)
        caps.get_image_data(surface)
        caps.get_parameter(GL_RENDERER)
        caps.get_parameter(GL_RENDERER)
        assert calls == [("canvas", "toDataURL"), ("webgl", "RENDERER")]

    def test_pass_through_reads_not_reported(self, caps):
        calls = []
        self.make_reporting_suite(caps, calls, webgl=False).apply_all()
        caps.get_parameter(GL_RENDERER)
        caps.get_parameter(0x0D33)
        assert calls == []

    @pytest.mark.asyncio
    async def test_blocked_apis_reported(self, caps):
        calls = []
        self.make_reporting_suite(caps, calls).apply_all()
        with pytest.raises(CapabilityBlocked):
            await caps.get_battery()
        with pytest.raises(CapabilityBlocked):
            caps.peer_connection().create_data_channel("leak")
        assert calls == [("battery", "getBattery"), ("webrtc", "createDataChannel")]

    def test_failing_reporter_contained(self, caps):
        def explode(method, details):
            raise RuntimeError("page gone")

        suite = CountermeasureSuite(caps, rng=random.Random(7), reporter=explode)
        suite.apply_all()
        assert caps.get_parameter(GL_VENDOR) == "Intel Inc."
        assert suite.reported == {"webgl": "VENDOR"}


class TestSandboxPageTarget:

    @pytest.mark.asyncio
    async def test_payload_reads_seeded_config(self):
        target = SandboxPageTarget("https://site.com/", rng=random.Random(5))
        await target.seed_config({"webgl": False})
        await target.load_payload()
        assert target.globals[CONFIG_GLOBAL] == {"webgl": False}
        assert target.suite.config.webgl is False
        assert target.capabilities.get_parameter(GL_VENDOR) == "NVIDIA Corporation"

    @pytest.mark.asyncio
    async def test_payload_loads_once(self):
        target = SandboxPageTarget("https://site.com/")
        await target.load_payload()
        suite = target.suite
        await target.load_payload()
        assert target.suite is suite

    @pytest.mark.asyncio
    async def test_message_before_payload_is_recorded_only(self):
        target = SandboxPageTarget("https://site.com/")
        await target.post_message(build_update_message({"webgl": False}))
        assert target.suite is None
        assert len(target.messages) == 1
