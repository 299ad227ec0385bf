import threading
from pathlib import Path
from typing import Dict, Optional

from loguru import logger


class StatusLedger:
    """Latest stage label per claim, shared by every worker of a run."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, str] = {}

    def record(self, key: str, label: str):
        with self._lock:
            self._entries[key] = label
        logger.debug(f"{key} -> {label}")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(key)

    def items(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._entries)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def dump(self, path: Path) -> int:
        """Write one ``item: <key>, status: <label>`` line per claim.

        Returns the number of lines written. A write error stops the report
        but is not raised.
        """
        written = 0
        try:
            with open(path, "w") as f:
                for key, label in self.items().items():
                    f.write(f"item: {key}, status: {label}\n")
                    written += 1
        except OSError as e:
            logger.error(f"Failed to write status report {path} after {written} lines: {e}")
            return written
        logger.info(f"Status report written to {path} ({written} items)")
        return written
