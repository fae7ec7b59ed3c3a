import json
import logging
import sys


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record, with ``exc`` added when a traceback is attached."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "level": record.levelname,
            "ts": self.formatTime(record),
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLineFormatter())
    root.addHandler(handler)
