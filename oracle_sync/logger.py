# oracle_sync/logger.py
import asyncio
import aiofiles
from aiocsv import AsyncWriter
import json
import logging
import os
import sys
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


@dataclass(slots=True, frozen=True)
class LogEntry:
    timestamp: str
    level: str
    source: str
    message: str
    fields: Optional[Dict[str, Any]] = None

    def as_text(self) -> str:
        data = f" | Data: {json.dumps(self.fields, default=str)}" if self.fields else ""
        return f"[{self.timestamp}] [{self.level.upper()}] [{self.source}] {self.message}{data}"


class EventSink:
    """
    Observability sink injected into every engine.
    The engines never reach for a global logger; the host decides where records go.
    """
    def record(self, level: str, source: str, message: str, fields: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class LoggerSink(EventSink):
    """Forwards records to a standard library logger."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def record(self, level, source, message, fields=None):
        text = f"[{source}] {message}"
        if fields:
            text += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        self.logger.log(LEVELS.get(level, logging.INFO), text)


class MemorySink(EventSink):
    """
    Keeps the most recent records in memory for the dashboard (and for tests).
    """
    def __init__(self, max_entries: int = 500):
        self._entries: Deque[LogEntry] = deque(maxlen=max_entries)
        self._listeners: List[Callable[[List[LogEntry]], None]] = []

    def record(self, level, source, message, fields=None):
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            source=source,
            message=message,
            fields=dict(fields) if fields else None,
        )
        self._entries.append(entry)
        for listener in list(self._listeners):
            listener(self.entries())

    def entries(self) -> List[LogEntry]:
        return list(self._entries)

    def find(self, level: Optional[str] = None, source: Optional[str] = None) -> List[LogEntry]:
        return [
            e for e in self.entries()
            if (level is None or e.level == level) and (source is None or e.source == source)
        ]

    def as_text(self) -> str:
        return "\n".join(e.as_text() for e in self.entries())

    def clear(self) -> None:
        self._entries.clear()
        for listener in list(self._listeners):
            listener([])

    def subscribe(self, listener: Callable[[List[LogEntry]], None]) -> Callable[[], None]:
        """Registers a listener and returns the function that removes it again."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe


class FanoutSink(EventSink):
    def __init__(self, sinks: Sequence[EventSink]):
        self.sinks = list(sinks)

    def record(self, level, source, message, fields=None):
        for sink in self.sinks:
            sink.record(level, source, message, fields)


class AsyncAuditLogger:
    """
    Non-blocking CSV audit trail for oracle prices and gap opportunities.
    Decouples disk I/O from the aggregation loops using an asyncio Queue.
    """
    def __init__(self, filepath: str, header: Optional[List[str]] = None):
        self.filepath = filepath
        self.header = header
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Creates the folder and file (with header row when new) and starts the background writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        is_new = not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0
        async with aiofiles.open(self.filepath, mode='a', newline='') as f:
            if is_new and self.header:
                writer = AsyncWriter(f, dialect='unix')
                await writer.writerow(self.header)
        self._worker_task = asyncio.create_task(self._writer_worker())

    async def log_row(self, data: List[Any]):
        """
        Non-blocking call to add an audit record to the queue.
        """
        await self._queue.put(data)

    async def flush(self):
        await self._queue.join()

    async def stop(self):
        await self.flush()
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

    async def _writer_worker(self):
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except Exception as e:
                # Disk trouble must not take the aggregation loops down with it
                print(f"AUDIT LOGGING FAILURE: {e}", file=sys.stderr)
            finally:
                self._queue.task_done()


def setup_console_logger(name: str, level: str):
    """
    Sets up the standard Python logger for console output.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
