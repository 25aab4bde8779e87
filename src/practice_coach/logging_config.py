"""loguru sinks for the server.

Every record carries a ``session_id`` extra. Code that handles one session
logs through ``logger.bind(session_id=...)``; everything else falls back to
``-`` so the text formats never fail on a missing key.
"""

import sys
from pathlib import Path
from typing import Any, Callable

from loguru import logger

_DEFAULT_EXTRA = {"session_id": "-"}

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> | "
    "<magenta>session={extra[session_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | session={extra[session_id]} | "
    "{name}:{function}:{line} - {message}"
)


def _add_console(level: str) -> str:
    logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT)
    return f"console (stderr, {level})"


def _add_file(level: str, path: str = "coach.log", rotation: str = "10 MB", retention: int = 3) -> str:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    logger.add(path, level=level, format=_FILE_FORMAT, rotation=rotation, retention=retention)
    return f"file ({path}, {level})"


def _add_json(level: str, path: str = "coach.jsonl", rotation: str = "10 MB", retention: int = 3) -> str:
    """One JSON record per line; bound extras land under ``record.extra``."""
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    logger.add(path, level=level, serialize=True, rotation=rotation, retention=retention)
    return f"json ({path}, {level})"


_SINKS: dict[str, Callable[..., str]] = {
    "console": _add_console,
    "file": _add_file,
    "json": _add_json,
}

_DEFAULT_CONSUMERS = [
    {"type": "console"},
    {"type": "file", "path": "coach.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace all sinks with the configured ones. Returns a description of each."""
    logger.remove()
    logger.configure(extra=dict(_DEFAULT_EXTRA))

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        sink_type = config.get("type", "")
        add_sink = _SINKS.get(sink_type)
        if add_sink is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue
        options = {k: v for k, v in config.items() if k not in ("type", "level")}
        descriptions.append(add_sink(config.get("level", level), **options))

    return descriptions
