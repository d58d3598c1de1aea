"""Structured JSON logging with request and payment context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from creohub.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_reference_ctx: ContextVar[str] = ContextVar("order_reference", default="")
provider_ctx: ContextVar[str] = ContextVar("provider", default="")

QUIET_LOGGERS = ("httpx", "httpcore", "stripe")


class ContextFilter(logging.Filter):
    """Inject service name and payment correlation fields into every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.order_reference = order_reference_ctx.get()
        record.provider = provider_ctx.get()
        return True


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter()
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(order_reference)s %(provider)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    root.addFilter(context_filter)
    # httpx logs every request line at INFO, including query strings sent to providers.
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("creohub")
