"""
Structured JSON logging.

Logs go to stdout, one JSON object per line, so cloud logging systems can
index fields such as subject, client_id, tool and decision, and alert on
auth failures.

Structured fields are attached with:

    logger.info("Tool call authorized", extra={"auth_data": {...}})

Never put secrets, full tokens or codes in auth_data.
"""

import json
import logging
import sys


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO",
         "logger": "mcp_oauth.issuer", "message": "Refresh token rotated",
         "client_id": "claude-web", "decision": "rotated"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "auth_data"):
            log_entry.update(record.auth_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "info") -> None:
    """Install the JSON formatter on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )
