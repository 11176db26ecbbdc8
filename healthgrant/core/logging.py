import logging
import sys
import structlog
from pythonjsonlogger import jsonlogger

from ..config import get_settings


def setup_logging(level: int = logging.INFO):
    """Structured logging: structlog over stdlib, JSON lines on stdout"""

    settings = get_settings()

    # One formatter for both sides: structlog event fields arrive as `extra`
    json_formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        static_fields={"environment": settings.environment},
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    # Idempotent: the app factory may run more than once in tests
    if not any(getattr(h, "_healthgrant", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(json_formatter)
        handler._healthgrant = True
        root.addHandler(handler)
    root.setLevel(level)

    return structlog.get_logger("healthgrant")
