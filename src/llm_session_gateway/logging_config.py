import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

_PACKAGE = "llm_session_gateway"

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level:<8}</level> "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> {message}"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} | {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> int: ...
    def describe(self, level: str) -> str: ...


class _GatewaySink:
    """Shared options: ``gateway_only`` drops records from other libraries."""

    def __init__(self, gateway_only: bool = False):
        self._gateway_only = gateway_only

    def _filter(self) -> str | None:
        return _PACKAGE if self._gateway_only else None

    def _scope(self) -> str:
        return ", gateway only" if self._gateway_only else ""


class ConsoleLogConsumer(_GatewaySink):
    def __init__(self, stream: str = "stderr", gateway_only: bool = False):
        super().__init__(gateway_only)
        if stream not in ("stderr", "stdout"):
            raise ValueError(f"Console log stream must be 'stderr' or 'stdout', got {stream!r}")
        self._stream = stream

    def register(self, level: str) -> int:
        return logger.add(
            sys.stdout if self._stream == "stdout" else sys.stderr,
            level=level,
            format=_CONSOLE_FORMAT,
            filter=self._filter(),
        )

    def describe(self, level: str) -> str:
        return f"console ({self._stream}, {level}{self._scope()})"


class FileLogConsumer(_GatewaySink):
    """Rotating log file; ``serialize=True`` writes one JSON object per line."""

    def __init__(
        self,
        path: str = "gateway.log",
        rotation: str = "10 MB",
        retention: int = 3,
        serialize: bool = False,
        gateway_only: bool = False,
    ):
        super().__init__(gateway_only)
        self._path = Path(path)
        self._rotation = rotation
        self._retention = retention
        self._serialize = serialize

    def register(self, level: str) -> int:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        return logger.add(
            str(self._path),
            level=level,
            format=_FILE_FORMAT,
            filter=self._filter(),
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._serialize,
        )

    def describe(self, level: str) -> str:
        kind = "jsonl" if self._serialize else "text"
        return f"file ({self._path}, {kind}, {level}{self._scope()})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace every loguru sink with the configured consumers.

    The package disables its logger on import so embedding applications stay
    quiet; calling this turns it back on. ``consumers=None`` means a single
    stderr console. Entries with an unknown ``type`` are reported and skipped.
    Returns one description per registered consumer.
    """
    logger.remove()
    logger.enable(_PACKAGE)

    if consumers is None:
        consumers = [{"type": "console"}]

    descriptions: list[str] = []
    for entry in consumers:
        options = dict(entry)
        kind = options.pop("type", "")
        sink_level = options.pop("level", level)
        consumer_cls = _CONSUMER_TYPES.get(kind)
        if consumer_cls is None:
            logger.warning(f"Skipping log consumer with unknown type {kind!r}")
            continue

        consumer = consumer_cls(**options)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
