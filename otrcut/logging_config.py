from __future__ import annotations

import logging

from otrcut.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(threadName)s | %(message)s"


def configure_logging(settings: LoggingSettings) -> None:
    """Configure process-wide logging once at startup."""

    options: dict[str, object] = {}
    if settings.file is not None:
        log_file = settings.file.expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        options["filename"] = str(log_file)
        options["encoding"] = "utf-8"

    logging.basicConfig(
        level=getattr(logging, settings.level.upper(), logging.INFO),
        format=DEFAULT_LOG_FORMAT,
        force=True,
        **options,
    )
