import pytest

from core.storage import SettingsStore


class TestSettingsStore:

    @pytest.mark.asyncio
    async def test_absent_keys_take_defaults(self):
        store = SettingsStore()
        data = await store.get({"whitelist": [], "canvasProtection": True})
        assert data == {"whitelist": [], "canvasProtection": True}

    @pytest.mark.asyncio
    async def test_key_list_omits_absent(self):
        store = SettingsStore(initial={"whitelist": ["a.com"]})
        assert await store.get(["whitelist", "globalBlock"]) == {"whitelist": ["a.com"]}

    @pytest.mark.asyncio
    async def test_set_merges(self):
        store = SettingsStore(initial={"whitelist": ["a.com"]})
        await store.set({"globalBlock": ["t.com"]})
        assert await store.get(["whitelist", "globalBlock"]) == {"whitelist": ["a.com"], "globalBlock": ["t.com"]}

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        store = SettingsStore()
        blocklist = ["t.com"]
        await store.set({"globalBlock": blocklist})
        blocklist.append("u.com")
        data = await store.get({"globalBlock": []})
        data["globalBlock"].append("v.com")
        assert (await store.get(["globalBlock"]))["globalBlock"] == ["t.com"]

    @pytest.mark.asyncio
    async def test_file_backed_persistence(self, tmp_path):
        path = str(tmp_path / "config" / "engine_state.json")
        store = SettingsStore(path)
        await store.set({"currentProfile": "strict", "whitelist": ["bank.com"]})

        reloaded = SettingsStore(path)
        data = await reloaded.get({"currentProfile": "balanced", "whitelist": []})
        assert data == {"currentProfile": "strict", "whitelist": ["bank.com"]}

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "engine_state.json"
        path.write_text("[1, 2", encoding="utf-8")
        store = SettingsStore(str(path))
        assert await store.get({"whitelist": []}) == {"whitelist": []}
