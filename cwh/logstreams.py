"""JSON log output for the server.

All modules log via `logging.getLogger("app")` and pass structured context as
a single dict argument, eg

    logit.info("cache synced", {"kind": "ServiceAccount"})

The formatter merges that dict into the JSON object of the log line.

"""

import json
import logging
import sys


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "level": record.levelname,
            "ts": int(record.created * 1000),
            "logger": record.name,
            "message": record.msg if isinstance(record.args, dict) else record.getMessage(),
        }
        if isinstance(record.args, dict):
            payload.update({k: v for k, v in record.args.items() if k not in payload})
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup(level: str) -> None:
    """Send JSON logs of `level` and above to stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    for name in ("app", "Watch"):
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.setLevel(level.upper())
        logger.propagate = False
