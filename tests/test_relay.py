import logging
import random

import pytest
from unittest.mock import AsyncMock, MagicMock

from browser.countermeasures import GL_VENDOR, SandboxPageTarget
from browser.payload_scripts import (
    CONFIG_GLOBAL,
    PAGE_PROTECTIONS_PAYLOAD,
    UPDATE_MESSAGE_TYPE,
)
from browser.relay import PlaywrightPageTarget, ProtectionRelay
from core.storage import SettingsStore


@pytest.fixture
def store():
    return SettingsStore(initial={
        "whitelist": ["bank.com"],
        "webglProtection": False,
    })


@pytest.fixture
def relay(store):
    return ProtectionRelay(store)


class TestResolveConfig:

    @pytest.mark.asyncio
    async def test_missing_toggles_default_on(self, relay):
        config = await relay.resolve_config("https://news.site/")
        assert config.to_dict() == {
            "canvas": True, "webgl": False, "fonts": True, "screen": True,
            "webrtc": True, "timing": True, "userAgent": True, "timezone": True,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", [
        "https://bank.com/login",
        "https://online.bank.com/",
        "https://BANK.com:8443/",
    ])
    async def test_whitelisted_hosts(self, relay, url):
        assert await relay.resolve_config(url) is None

    @pytest.mark.asyncio
    async def test_suffix_match_needs_dot_boundary(self, relay):
        assert await relay.resolve_config("https://notbank.com/") is not None


class TestInject:

    @pytest.mark.asyncio
    async def test_two_stage_injection(self, relay):
        target = SandboxPageTarget("https://news.site/", rng=random.Random(1))
        assert await relay.inject(target) is True
        assert target.globals[CONFIG_GLOBAL]["webgl"] is False
        assert target.suite.applied["canvas"] is True
        assert "webgl" not in target.suite.applied

    @pytest.mark.asyncio
    async def test_whitelisted_page_untouched(self, relay, caplog):
        target = SandboxPageTarget("https://online.bank.com/account")
        with caplog.at_level(logging.INFO):
            assert await relay.inject(target) is False
        assert target.globals == {}
        assert target.suite is None
        assert "whitelisted" in caplog.text

    @pytest.mark.asyncio
    async def test_seed_precedes_payload(self, relay):
        calls = []
        target = MagicMock()
        target.url = "https://news.site/"
        target.seed_config = AsyncMock(side_effect=lambda cfg: calls.append("seed"))
        target.load_payload = AsyncMock(side_effect=lambda: calls.append("payload"))
        await relay.inject(target)
        assert calls == ["seed", "payload"]

    @pytest.mark.asyncio
    async def test_restricted_page_failure_contained(self, relay):
        target = MagicMock()
        target.url = "chrome://settings"
        target.seed_config = AsyncMock(side_effect=RuntimeError("Cannot access a chrome:// URL"))
        target.load_payload = AsyncMock()
        assert await relay.inject(target) is False
        target.load_payload.assert_not_called()

    @pytest.mark.asyncio
    async def test_unparseable_url_contained(self, relay):
        target = SandboxPageTarget("http://[::1/broken")
        assert await relay.inject(target) is False


class TestForwardUpdate:

    @pytest.mark.asyncio
    async def test_update_reaches_suite(self, relay):
        target = SandboxPageTarget("https://news.site/")
        await relay.inject(target)
        assert await relay.forward_update(target, {"webgl": True}) is True
        assert target.messages[-1]["type"] == UPDATE_MESSAGE_TYPE
        assert target.capabilities.get_parameter(GL_VENDOR) == "Intel Inc."

    @pytest.mark.asyncio
    async def test_closed_target(self, relay):
        target = MagicMock()
        target.post_message = AsyncMock(side_effect=RuntimeError("Target closed"))
        assert await relay.forward_update(target, {"canvas": False}) is False


class TestPlaywrightPageTarget:

    @pytest.mark.asyncio
    async def test_posts_updates_into_page(self):
        page = MagicMock()
        page.url = "https://news.site/"
        page.evaluate = AsyncMock()
        target = PlaywrightPageTarget(page)

        assert target.url == "https://news.site/"
        await target.post_message({"type": UPDATE_MESSAGE_TYPE})
        assert page.evaluate.await_args.args[1] == {"type": UPDATE_MESSAGE_TYPE}
        page.add_script_tag.assert_not_called()


def make_context():
    context = MagicMock()
    context.add_init_script = AsyncMock()
    return context


class TestInitScripts:

    @pytest.mark.asyncio
    async def test_install_registers_payload_then_seed(self, relay):
        context = make_context()
        await relay.install(context)
        payload, seed = [c.args[0] for c in context.add_init_script.await_args_list]
        assert payload == PAGE_PROTECTIONS_PAYLOAD
        assert CONFIG_GLOBAL in seed
        assert '["bank.com"]' in seed
        assert '"webgl": false' in seed
        assert relay.contexts == [context]

    @pytest.mark.asyncio
    async def test_refresh_seeds_current_whitelist(self, relay, store):
        context = make_context()
        await relay.install(context)
        await store.set({"whitelist": ["bank.com", "mail.org"]})
        assert await relay.refresh() == 1
        seed = context.add_init_script.await_args.args[0]
        assert '["bank.com", "mail.org"]' in seed

    @pytest.mark.asyncio
    async def test_refresh_without_contexts(self, relay):
        assert await relay.refresh() == 0

    @pytest.mark.asyncio
    async def test_closed_context_dropped(self, relay):
        live, closed = make_context(), make_context()
        await relay.install(live)
        await relay.install(closed)
        closed.add_init_script = AsyncMock(side_effect=RuntimeError("Target closed"))
        assert await relay.refresh() == 1
        assert relay.contexts == [live]
