"""
Production-ready logging configuration
"""

import logging
import sys
import json
from datetime import datetime, timezone

CONTEXT_FIELDS = (
    "agent_id",
    "job_id",
    "audit_id",
    "request_id",
    "credential",
    "attempt",
    "duration_ms",
)


class StructuredFormatter(logging.Formatter):
    """JSON structured logging formatter for production"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON"""

        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        # Add extra fields if present
        for field_name in CONTEXT_FIELDS:
            if hasattr(record, field_name):
                log_data[field_name] = getattr(record, field_name)

        # Add exception info if present
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Setup production logging configuration"""

    formatter = StructuredFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    # Avoid duplicate handlers when called from both the API and the worker
    root_logger.handlers = [console_handler]

    logging.getLogger("uvicorn.access").disabled = True
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)  # Reduce SQL noise
    logging.getLogger("httpx").setLevel(logging.WARNING)


def mask_credential(credential: str) -> str:
    """Render a credential safely for log output."""
    if not credential:
        return "<empty>"
    return f"...{credential[-4:]}" if len(credential) > 4 else "****"
