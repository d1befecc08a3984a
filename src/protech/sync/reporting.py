"""Forward ERROR log records to the environment's error-reporting endpoint."""

import logging
import traceback
from datetime import datetime, timezone
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class ErrorReportingHandler(logging.Handler):
    """Posts each record as JSON to ``dsn``. Failures go to handleError."""

    def __init__(self, dsn: str, environment: str, timeout: float = 5.0,
                 transport: Optional[httpx.BaseTransport] = None):
        super().__init__(level=logging.ERROR)
        self.dsn = dsn
        self.environment = environment
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def build_event(self, record: logging.LogRecord) -> dict:
        event = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            "environment": self.environment,
        }
        if record.exc_info:
            event["exception"] = "".join(
                traceback.format_exception(*record.exc_info)
            )
        return event

    def emit(self, record: logging.LogRecord):
        try:
            self._client.post(self.dsn, json=self.build_event(record))
        except Exception:
            self.handleError(record)

    def close(self):
        self._client.close()
        super().close()


class ErrorReporter:
    """Owns the reporting handler attached to the ``protech`` logger."""

    def __init__(self, logger_name: str = "protech",
                 transport: Optional[httpx.BaseTransport] = None):
        self.logger_name = logger_name
        self._transport = transport
        self._handler: Optional[ErrorReportingHandler] = None

    @property
    def dsn(self) -> Optional[str]:
        return self._handler.dsn if self._handler else None

    def configure(self, dsn: Optional[str], environment: str):
        """Report to ``dsn`` from now on; ``None`` turns reporting off."""
        self.detach()
        if not dsn:
            return
        self._handler = ErrorReportingHandler(
            dsn, environment, transport=self._transport,
        )
        logging.getLogger(self.logger_name).addHandler(self._handler)
        logger.info("Error reporting enabled for %s", environment)

    def detach(self):
        if self._handler is not None:
            logging.getLogger(self.logger_name).removeHandler(self._handler)
            self._handler.close()
            self._handler = None
