"""Tracker knowledge base loading.

The knowledge base is a JSON document of the form::

    {
      "trackers":   {"<host>": {TrackerRecord}, ...},
      "categories": {"<category>": {CategoryDefault}, ...}
    }

It is loaded once per session from a local file or an http(s) URL and is
read-only afterwards.  A missing, unreachable or malformed source never
fails initialisation: it degrades to an empty database.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

import aiohttp
from pydantic import ValidationError

from core.models import TrackerDatabase

logger = logging.getLogger(__name__)


async def _fetch_json(url: str, timeout: float) -> Dict[str, Any]:
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session:
        async with session.get(url) as response:
            response.raise_for_status()
            return await response.json(content_type=None)


def _read_json(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


async def load_tracker_database(
    source: Union[str, Path, None],
    timeout: float = 10.0,
) -> TrackerDatabase:
    """Load and validate the tracker knowledge base.

    Args:
        source: Local file path, or an ``http://`` / ``https://`` URL.
            ``None`` yields an empty database.
        timeout: Network timeout in seconds for URL sources.

    Returns:
        The parsed :class:`TrackerDatabase`, or an empty one on any
        load or parse failure (logged at error level).
    """
    if not source:
        logger.warning("No tracker database source configured")
        return TrackerDatabase.empty()

    source_str = str(source)
    try:
        if source_str.startswith(("http://", "https://")):
            raw = await _fetch_json(source_str, timeout)
        else:
            raw = await asyncio.to_thread(_read_json, source_str)
        database = TrackerDatabase.model_validate(raw)
    except (
        OSError,
        ValueError,
        ValidationError,
        aiohttp.ClientError,
        asyncio.TimeoutError,
    ) as e:
        logger.error(
            "Failed to load tracker database from %s: %s", source_str, e,
        )
        return TrackerDatabase.empty()

    logger.info(
        "Tracker database loaded: %d trackers, %d categories",
        len(database.trackers), len(database.categories),
    )
    return database
