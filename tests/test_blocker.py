import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, PropertyMock

from browser.blocker import (
    DeclarativeBlocker,
    request_initiator_host,
    request_resource_type,
)
from core.models import DeclarativeRule, RuleCondition
from core.rules import RuleEngineError, build_rules


def make_route(url, resource_type="script", frame_url="https://site.com/", parent_frame=None):
    mock_route = AsyncMock()
    mock_route.request = MagicMock()
    mock_route.request.url = url
    mock_route.request.resource_type = resource_type
    mock_route.request.frame.url = frame_url
    mock_route.request.frame.parent_frame = parent_frame
    return mock_route


@pytest_asyncio.fixture
async def blocker():
    blocker = DeclarativeBlocker()
    await blocker.update_dynamic_rules(add_rules=build_rules(["tracker.com"], ["bank.com"]))
    return blocker


class TestRuleTable:

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected_atomically(self):
        blocker = DeclarativeBlocker()
        rules = build_rules(["a.com"]) + build_rules(["b.com"])
        with pytest.raises(RuleEngineError, match="Duplicate"):
            await blocker.update_dynamic_rules(add_rules=rules)
        assert await blocker.get_dynamic_rules() == []

    @pytest.mark.asyncio
    async def test_id_clash_with_existing_rule(self):
        blocker = DeclarativeBlocker()
        await blocker.update_dynamic_rules(add_rules=build_rules(["a.com"]))
        with pytest.raises(RuleEngineError):
            await blocker.update_dynamic_rules(add_rules=build_rules(["b.com"]))

    @pytest.mark.asyncio
    async def test_non_positive_id_rejected(self):
        rule = DeclarativeRule(id=0, condition=RuleCondition("*://*.a.com/*"))
        with pytest.raises(RuleEngineError, match="Invalid rule id"):
            await DeclarativeBlocker().update_dynamic_rules(add_rules=[rule])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url_filter", ["", "***", "*://*.-bad-.com/*"])
    async def test_malformed_filter_rejected(self, url_filter):
        rule = DeclarativeRule(id=1, condition=RuleCondition(url_filter))
        with pytest.raises(RuleEngineError, match="Malformed"):
            await DeclarativeBlocker().update_dynamic_rules(add_rules=[rule])

    @pytest.mark.asyncio
    async def test_quota(self):
        blocker = DeclarativeBlocker(max_rules=2)
        with pytest.raises(RuleEngineError, match="quota"):
            await blocker.update_dynamic_rules(add_rules=build_rules(["a.com", "b.com", "c.com"]))
        await blocker.update_dynamic_rules(add_rules=build_rules(["a.com", "b.com"]))
        assert len(await blocker.get_dynamic_rules()) == 2

    @pytest.mark.asyncio
    async def test_remove_and_add_in_one_batch(self):
        blocker = DeclarativeBlocker()
        await blocker.update_dynamic_rules(add_rules=build_rules(["a.com"]))
        await blocker.update_dynamic_rules(remove_rule_ids=[1], add_rules=build_rules(["b.com"]))
        assert blocker.match("https://b.com/x.js", "script") is not None
        assert blocker.match("https://a.com/x.js", "script") is None


class TestMatch:

    @pytest.mark.asyncio
    async def test_host_filter_matches_apex_and_subdomains(self, blocker):
        assert blocker.match("https://tracker.com/t.js", "script")
        assert blocker.match("http://cdn.tracker.com:8080/p.gif?x=1", "image")
        assert blocker.match("https://a.b.tracker.com", "xmlhttprequest")

    @pytest.mark.asyncio
    async def test_host_filter_respects_label_boundary(self, blocker):
        assert blocker.match("https://nottracker.com/t.js", "script") is None
        assert blocker.match("https://tracker.com.evil.net/t.js", "script") is None
        assert blocker.match("https://site.com/?ref=tracker.com/x", "script") is None

    @pytest.mark.asyncio
    async def test_resource_type_filter(self, blocker):
        assert blocker.match("https://tracker.com/", "main_frame") is None
        assert blocker.match("https://tracker.com/s.css", "stylesheet") is None
        assert blocker.match("https://tracker.com/f", "sub_frame") is not None

    @pytest.mark.asyncio
    async def test_whitelisted_initiator_is_exempt(self, blocker):
        assert blocker.match("https://tracker.com/t.js", "script", "bank.com") is None
        assert blocker.match("https://tracker.com/t.js", "script", "online.bank.com") is None
        assert blocker.match("https://tracker.com/t.js", "script", "news.com") is not None

    @pytest.mark.asyncio
    async def test_wildcard_filter(self):
        blocker = DeclarativeBlocker()
        rule = DeclarativeRule(id=1, condition=RuleCondition("/pixel*.gif"))
        await blocker.update_dynamic_rules(add_rules=[rule])
        assert blocker.match("https://x.org/img/pixel-01.gif", "image")
        assert blocker.match("https://x.org/img/logo.gif", "image") is None

    @pytest.mark.asyncio
    async def test_highest_priority_wins(self):
        blocker = DeclarativeBlocker()
        low = DeclarativeRule(id=1, condition=RuleCondition("*://*.a.com/*"), priority=1)
        high = DeclarativeRule(id=2, condition=RuleCondition("*.js"), priority=3)
        await blocker.update_dynamic_rules(add_rules=[low, high])
        assert blocker.match("https://a.com/x.js", "script").id == 2


class TestHandleRoute:

    @pytest.mark.asyncio
    async def test_blocked_request_aborted(self, blocker):
        mock_route = make_route("https://ads.tracker.com/unit.js")
        await blocker.handle_route(mock_route)
        mock_route.abort.assert_called_once_with("blockedbyclient")
        mock_route.continue_.assert_not_called()
        assert blocker.blocked_count == 1

    @pytest.mark.asyncio
    async def test_allowed_request_continues(self, blocker):
        mock_route = make_route("https://cdn.example.org/lib.js")
        await blocker.handle_route(mock_route)
        mock_route.continue_.assert_called_once()
        mock_route.abort.assert_not_called()

    @pytest.mark.asyncio
    async def test_whitelisted_page_continues(self, blocker):
        mock_route = make_route("https://tracker.com/t.js", frame_url="https://www.bank.com/login")
        await blocker.handle_route(mock_route)
        mock_route.continue_.assert_called_once()

    @pytest.mark.asyncio
    async def test_xhr_maps_to_xmlhttprequest(self, blocker):
        mock_route = make_route("https://tracker.com/collect", resource_type="fetch")
        await blocker.handle_route(mock_route)
        mock_route.abort.assert_called_once()

    @pytest.mark.asyncio
    async def test_top_level_navigation_never_blocked(self, blocker):
        mock_route = make_route("https://tracker.com/", resource_type="document", frame_url="")
        await blocker.handle_route(mock_route)
        mock_route.continue_.assert_called_once()

    @pytest.mark.asyncio
    async def test_subframe_document_blocked(self, blocker):
        parent = MagicMock()
        parent.url = "https://site.com/"
        mock_route = make_route(
            "https://tracker.com/frame.html", resource_type="document",
            frame_url="https://tracker.com/frame.html", parent_frame=parent,
        )
        await blocker.handle_route(mock_route)
        mock_route.abort.assert_called_once()

    @pytest.mark.asyncio
    async def test_handle_route_disabled(self, blocker):
        blocker.enabled = False
        mock_route = make_route("https://tracker.com/t.js")
        await blocker.handle_route(mock_route)
        mock_route.continue_.assert_called_once()
        mock_route.abort.assert_not_called()


class TestRequestHelpers:

    def test_resource_type_mapping(self):
        request = MagicMock()
        for pw_type, expected in [("xhr", "xmlhttprequest"), ("image", "image"), ("ping", "other")]:
            request.resource_type = pw_type
            assert request_resource_type(request) == expected

    def test_document_without_frame_is_main_frame(self):
        request = MagicMock()
        request.resource_type = "document"
        type(request).frame = PropertyMock(side_effect=RuntimeError("no frame"))
        assert request_resource_type(request) == "main_frame"

    def test_initiator_host_from_frame(self):
        request = MagicMock()
        request.resource_type = "script"
        request.frame.url = "https://News.Site.com/article"
        assert request_initiator_host(request) == "news.site.com"
