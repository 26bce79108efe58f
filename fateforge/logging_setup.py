from __future__ import annotations

import logging.config
import os


def setup_logging(level: str | None = None) -> None:
    lvl = (level or "INFO").upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "std": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "std",
                    "level": lvl,
                }
            },
            "root": {"level": lvl, "handlers": ["console"]},
            "loggers": {
                "httpx": {"level": os.getenv("HTTPX_LOG_LEVEL", "WARNING")},
                "httpcore": {"level": "WARNING"},
                "sqlalchemy.engine": {"level": os.getenv("SQL_LOG_LEVEL", "WARNING")},
            },
        }
    )
