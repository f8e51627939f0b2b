"""Logging configuration for the privacy enforcement engine.

Sets up a dual-handler logging pipeline:

1. **Console** -- :class:`SafeStreamHandler`, which never lets an
   encoding problem on a narrow Windows console take the engine down.
2. **File** -- :class:`CompressedRotatingFileHandler` writing to
   ``<log_dir>/privacy_engine.log`` with gzip rotation (10 MiB per file,
   5 backups).

Usage::

    from core.logging_setup import setup_logging
    setup_logging("DEBUG", "logs")
"""

import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FILE_NAME = "privacy_engine.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that stores rotated generations as ``.gz``."""

    def rotation_filename(self, default_name: str) -> str:
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        """Compress *source* into *dest* and remove *source*.

        Args:
            source: Path to the uncompressed log file.
            dest: Destination path for the compressed file.
        """
        with open(source, 'rb') as f_in:
            with gzip.open(dest, 'wb') as f_out:
                shutil.copyfileobj(f_in, f_out)
        os.remove(source)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that degrades unencodable characters instead of failing.

    Hostnames and URLs logged by the engine can carry IDN characters that a
    ``cp1252`` console cannot print.  On ``UnicodeEncodeError`` the message
    is re-encoded with replacement characters using the stream's own
    encoding.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            stream = self.stream
            try:
                stream.write(msg + self.terminator)
            except UnicodeEncodeError:
                encoding = getattr(stream, "encoding", None) or "ascii"
                safe_msg = msg.encode(
                    encoding, errors='replace',
                ).decode(encoding)
                stream.write(safe_msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(
    log_level: str = "INFO", log_dir: Optional[str] = "logs",
) -> None:
    """Configure the root logger with console and file handlers.

    Args:
        log_level: Logging level name (e.g. ``"DEBUG"``, ``"INFO"``).
            Unknown names fall back to ``INFO``.
        log_dir: Directory for ``privacy_engine.log``.  ``None`` disables
            the file handler (console only).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    handlers: list = [SafeStreamHandler(sys.stdout)]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.insert(0, CompressedRotatingFileHandler(
            os.path.join(log_dir, LOG_FILE_NAME),
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS,
            encoding='utf-8',
        ))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
