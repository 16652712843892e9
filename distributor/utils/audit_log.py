"""Append-only audit files mirroring store inserts"""

import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Optional

from distributor.utils.logger import get_logger

logger = get_logger(__name__)

RECEIVED_LOG = "received.jsonl"
DESTINATIONS_LOG = "destinations.jsonl"


class AuditLog:
    """Writes one JSON line per record, off the caller's thread.

    A single worker keeps lines in insert order. Writes are fire-and-forget:
    a failed append is logged and dropped, the store stays authoritative.
    """

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self._executor: Optional[ThreadPoolExecutor] = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-log")
        return self._executor

    def append(self, filename: str, entry: Dict[str, Any]):
        """Queue one line for ``<log_dir>/<filename>``"""
        line = json.dumps(entry, default=str) + "\n"
        self._get_executor().submit(self._write_line, self.log_dir / filename, line)

    @staticmethod
    def _write_line(path: Path, line: str):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
        except Exception as e:
            logger.warning(f"Failed to append audit line to {path}: {e}")

    def close(self):
        """Wait for queued lines and release the worker"""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
