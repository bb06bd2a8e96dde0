"""
Storefront — ロギング設定

リクエストごとの相関 ID (X-Correlation-Id) を contextvar に保持し、
すべてのログレコードに埋め込む。
"""

import logging
from contextvars import ContextVar

from .config import LOG_LEVEL

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s [%(correlation_id)s]: %(message)s"


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get()
        return True


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
            handler.addFilter(CorrelationIdFilter())

    # SQL のエコーは不要
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
