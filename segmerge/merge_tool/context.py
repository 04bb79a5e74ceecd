from __future__ import annotations

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

LogCallback = Callable[[str, str], None]

logger = logging.getLogger(__name__)


class AnalysisContext:
    """Logging scope of one analysis call.

    Messages go to the optional callback (or the module logger) and, when ``log_path`` is
    set, to a per-run log file. Debug lines are emitted only when ``debug`` is true.
    """

    def __init__(
        self,
        log_callback: Optional[LogCallback] = None,
        *,
        debug: bool = False,
        log_path: Optional[Path] = None,
    ):
        self._log_callback = log_callback
        self.debug_enabled = debug
        self.log_path = log_path
        self._file_lock = threading.Lock()
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, level: str, message: str) -> None:
        self._append_log_line(level, message)
        if self._log_callback:
            try:
                self._log_callback(level, message)
            except Exception:  # pragma: no cover
                logger.exception("Failed to emit log callback.")
        else:
            getattr(logger, level, logger.info)(message)

    def debug(self, message: str) -> None:
        if self.debug_enabled:
            self.log("debug", message)

    def _append_log_line(self, level: str, message: str) -> None:
        if self.log_path is None:
            return
        timestamp = datetime.now().isoformat(timespec="seconds")
        line = f"{timestamp} [{level.upper()}] {message}\n"
        with self._file_lock:
            try:
                with self.log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
            except OSError:
                logger.exception("Failed to write analysis log.")
