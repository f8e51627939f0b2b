"""Flat key-value store for persisted engine settings.

Holds the blocklist, whitelist, current profile and the per-protection
toggles.  The store knows nothing about the keys it holds; every read
supplies its own defaults, so a missing or partial state file reads as
defaults.
"""

import asyncio
import copy
import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from core.utils import safe_json_read, safe_json_write

logger = logging.getLogger(__name__)


class SettingsStore:
    """Async flat key-value store, JSON-file backed when *path* is set.

    Reads and writes are coroutines so callers treat them as suspension
    points, the same way they would treat a browser storage area.  Values
    are deep-copied in both directions; callers never share mutable state
    with the store.
    """

    def __init__(
        self,
        path: Optional[str] = None,
        initial: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.path = path
        self._data: Dict[str, Any] = {}
        self._lock = asyncio.Lock()
        if path:
            self._data = safe_json_read(path) or {}
        if initial:
            self._data.update(copy.deepcopy(dict(initial)))

    async def get(
        self,
        defaults: Union[Mapping[str, Any], Iterable[str]],
    ) -> Dict[str, Any]:
        """Return stored values for the requested keys.

        Args:
            defaults: Either a mapping of key -> default value, or an
                iterable of keys (absent keys are then omitted).
        """
        if isinstance(defaults, Mapping):
            return {
                key: copy.deepcopy(self._data.get(key, default))
                for key, default in defaults.items()
            }
        return {
            key: copy.deepcopy(self._data[key])
            for key in defaults if key in self._data
        }

    async def set(self, values: Mapping[str, Any]) -> None:
        """Merge *values* into the store and persist if file backed."""
        async with self._lock:
            self._data.update(copy.deepcopy(dict(values)))
            if self.path:
                snapshot = copy.deepcopy(self._data)
                await asyncio.to_thread(safe_json_write, self.path, snapshot)
