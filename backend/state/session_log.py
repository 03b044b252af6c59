import logging
import time

LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


class SessionLogBuffer(logging.Handler):
    """Keeps this session's log lines in memory so they can be exported with the clips."""

    def __init__(self, level: int | str = logging.INFO, max_lines: int = 5000):
        if isinstance(level, str):
            level = LEVELS.get(level.lower(), logging.getLevelName(level.upper()))
        super().__init__(level)
        self.max_lines = max_lines
        self.lines: list[str] = []
        self._saved_levels: dict[str, int] = {}

    def emit(self, record: logging.LogRecord):
        try:
            stamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(record.created))
            line = f"{stamp}.{int(record.msecs):03d} [{record.levelname}] {record.getMessage()}"
        except (TypeError, ValueError):
            self.handleError(record)
            return
        self.lines.append(line)
        if len(self.lines) > self.max_lines:
            del self.lines[: len(self.lines) - self.max_lines]

    def text(self) -> str:
        return "\n".join(self.lines) + ("\n" if self.lines else "")

    def clear(self):
        self.lines = []

    def attach(self, logger_name: str = "uvicorn.error") -> "SessionLogBuffer":
        target = logging.getLogger(logger_name)
        if target.getEffectiveLevel() > self.level and logger_name not in self._saved_levels:
            self._saved_levels[logger_name] = target.level
            target.setLevel(self.level)
        target.addHandler(self)
        return self

    def detach(self, logger_name: str = "uvicorn.error"):
        """Remove the handler and put back any level attach() lowered."""
        target = logging.getLogger(logger_name)
        target.removeHandler(self)
        if logger_name in self._saved_levels:
            target.setLevel(self._saved_levels.pop(logger_name))
