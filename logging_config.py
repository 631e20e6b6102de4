"""Logging setup for the auth bridge.

Log lines use a leading tag, e.g. "[TOKEN] Access token issued". Records always
go to stderr as plain text; when a Supabase client is available they are also
shipped, as JSON rows, to the `logs` table in batches.
"""

import atexit
import logging
import re
import sys
import threading
from queue import Queue, Empty
from typing import Optional

TAG_PATTERN = re.compile(r'\[([A-Z_]+)\]\s*(.*)', re.DOTALL)


def split_tag(message: str) -> tuple:
    """Split "[TAG] text" into ("TAG", "text"). Untagged messages give (None, message)."""
    match = TAG_PATTERN.match(message)
    if match:
        return match.group(1), match.group(2)
    return None, message


class JSONFormatter(logging.Formatter):
    """Formats records as dict rows for the `logs` table."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> dict:
        tag, message = split_tag(record.getMessage())
        row = {
            "service": self.service_name,
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "logger": record.name,
            "extra": {
                "function": record.funcName,
                "line": record.lineno,
            },
        }
        if record.exc_info:
            row["extra"]["exception"] = self.formatException(record.exc_info)
        return row


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


class SupabaseHandler(logging.Handler):
    """Buffers formatted rows and inserts them into Supabase in batches.

    A daemon thread flushes every `flush_interval` seconds; `emit` flushes
    early once `batch_size` rows are waiting.
    """

    def __init__(self, supabase_client, batch_size: int = 20, flush_interval: float = 10.0,
                 table: str = "logs"):
        super().__init__()
        self.supabase = supabase_client
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.table = table

        self._queue: Queue = Queue()
        self._stopped = threading.Event()
        self._worker = threading.Thread(target=self._run, name="supabase-log-flush", daemon=True)
        self._worker.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord):
        try:
            row = self.format(record)
            if not isinstance(row, dict):
                row = {"level": record.levelname, "tag": None, "message": row, "logger": record.name}
            self._queue.put(row)
            if self._queue.qsize() >= self.batch_size:
                self.flush()
        except Exception:
            self.handleError(record)

    def _run(self):
        # Event.wait doubles as an interruptible sleep
        while not self._stopped.wait(self.flush_interval):
            self.flush()

    def _drain(self) -> list:
        rows = []
        while len(rows) < self.batch_size * 2:
            try:
                rows.append(self._queue.get_nowait())
            except Empty:
                break
        return rows

    def flush(self):
        rows = self._drain()
        if not rows:
            return
        try:
            self.supabase.table(self.table).insert(rows).execute()
        except Exception as e:
            # Can't log through logging here without recursing into this handler
            print(f"[WARNING] Failed to ship {len(rows)} log rows to Supabase: {e}", file=sys.stderr)

    def close(self):
        if not self._stopped.is_set():
            self._stopped.set()
            self.flush()
        super().close()


_supabase_handler: Optional[SupabaseHandler] = None


def setup_logging(
    service_name: str = "gpt-auth-bridge",
    level: str = "INFO",
    supabase_client=None,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        service_name: Value of the `service` column for shipped rows.
        level: Root log level name.
        supabase_client: Optional Supabase client for remote log shipping.

    Returns:
        The configured root logger.
    """
    global _supabase_handler

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(PlainFormatter())
    root_logger.addHandler(stderr_handler)

    if supabase_client is not None:
        try:
            _supabase_handler = SupabaseHandler(supabase_client)
            _supabase_handler.setLevel(logging.INFO)
            _supabase_handler.setFormatter(JSONFormatter(service_name))
            root_logger.addHandler(_supabase_handler)
        except Exception as e:
            print(f"[WARNING] Supabase logging setup failed: {e}", file=sys.stderr)
            _supabase_handler = None

    # supabase-py and the paywall client both log every request through httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if _supabase_handler:
        logger.info(f"[STARTUP] Supabase log shipping enabled for {service_name}")
    else:
        logger.info("[STARTUP] Supabase log shipping disabled (no client)")

    return root_logger


def flush_logs():
    """Push any buffered rows to Supabase now."""
    if _supabase_handler:
        _supabase_handler.flush()
