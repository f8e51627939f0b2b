"""Shared helpers for the engine core.

Hostname handling used by the request observer, the relay and the rule
engine, plus corruption-safe JSON persistence for the settings store.
"""

import json
import logging
import os
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


def extract_host(url: Optional[str]) -> str:
    """Return the lower-cased hostname of *url*, or ``""``.

    Raises:
        ValueError: If *url* cannot be parsed (e.g. a malformed IPv6
            literal).  Callers observing requests skip such URLs.
    """
    if not url:
        return ""
    return (urlsplit(url).hostname or "").lower()


def domain_matches(hostname: str, domain: str) -> bool:
    """True when *hostname* is *domain* or a dot-suffixed subdomain of it."""
    return hostname == domain or hostname.endswith("." + domain)


def domain_matches_any(hostname: str, domains: Iterable[str]) -> bool:
    return any(domain_matches(hostname, d) for d in domains)


def safe_json_read(
    filepath: str, max_backups: int = 3,
) -> Optional[Dict[str, Any]]:
    """Read JSON with fallback to backups if corrupted.

    Tries the primary file first, then ``file.backup.1`` ..
    ``file.backup.N`` in order until one parses to a JSON object.

    Returns:
        Parsed dictionary, or ``None`` if nothing usable exists.
    """
    paths = [filepath] + [
        f"{filepath}.backup.{i}"
        for i in range(1, max_backups + 1)
    ]
    for path in paths:
        if not os.path.exists(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", path, e)
            continue
        if isinstance(data, dict):
            return data
    return None


def safe_json_write(
    filepath: str,
    data: Dict[str, Any],
    max_backups: int = 3,
) -> bool:
    """Atomic JSON write with backup rotation.

    The current file becomes ``backup.1`` (older backups shift up), the
    new payload is written to a temporary file, validated by re-reading,
    then moved into place.

    Returns:
        ``True`` on success, ``False`` if the write failed (logged).
    """
    try:
        dirpath = os.path.dirname(filepath)
        if dirpath:
            os.makedirs(dirpath, exist_ok=True)

        if os.path.exists(filepath):
            backup_base = filepath + ".backup"
            for i in range(max_backups - 1, 0, -1):
                old = f"{backup_base}.{i}"
                if os.path.exists(old):
                    os.replace(old, f"{backup_base}.{i + 1}")
            os.replace(filepath, f"{backup_base}.1")

        temp_file = filepath + ".tmp"
        with open(temp_file, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)

        with open(temp_file, "r", encoding="utf-8") as fh:
            json.load(fh)

        os.replace(temp_file, filepath)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.warning(
            "Could not safely write JSON to %s: %s",
            filepath, e,
        )
        return False
