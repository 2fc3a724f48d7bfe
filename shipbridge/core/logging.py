from __future__ import annotations

from datetime import datetime, timezone
import json
import logging

from shipbridge.core.config import get_settings


_CONFIGURED = False


class JsonFormatter(logging.Formatter):
    # Render one JSON object per record so log pipelines can index fields.
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def configure_logging(*, force: bool = False) -> None:
    # Configure the root logger once per process from settings.
    global _CONFIGURED
    if _CONFIGURED and not force:
        return
    settings = get_settings()
    handler = logging.StreamHandler()
    if settings.log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    _CONFIGURED = True
