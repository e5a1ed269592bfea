"""Process-wide logging setup."""

import logging.config

from labledger.core.config import settings


def configure_logging(level: str | None = None) -> None:
    """Configure root and library loggers once at app start."""
    level = (level or settings.log_level).upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {
                "labledger": {"level": level, "handlers": ["console"], "propagate": False},
                # SQL echo is driven by settings.debug on the engine itself
                "sqlalchemy.engine": {"level": "WARNING"},
            },
            "root": {"level": "WARNING", "handlers": ["console"]},
        }
    )
