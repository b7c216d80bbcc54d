"""Logging setup for the riddle bot.

Every record carries the chat, the round and the answering player so that a
single round can be followed across concurrent handlers. The values live in
context variables bound with :func:`logging_context`.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from logging.config import dictConfig
from typing import Iterator

BASE_LOGGER_NAME = "riddle"

_UNSET = "-"
_CONTEXT_FIELDS: dict[str, ContextVar[str]] = {
    "chat_id": ContextVar("chat_id", default=_UNSET),
    "round_id": ContextVar("round_id", default=_UNSET),
    "player": ContextVar("player", default=_UNSET),
}

# Client libraries that log every HTTP request (the Telegram URL embeds the bot token).
_QUIET_LOGGERS = ("httpx", "httpcore", "openai")


class RoundContextFilter(logging.Filter):
    """Copy the bound chat, round and player identifiers onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 - logging API
        for name, var in _CONTEXT_FIELDS.items():
            if not hasattr(record, name):
                setattr(record, name, var.get())
        return True


def configure_logging(level: int | str = "INFO") -> None:
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"round_context": {"()": RoundContextFilter}},
            "formatters": {
                "default": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s "
                    "[chat=%(chat_id)s round=%(round_id)s player=%(player)s] %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["round_context"],
                    "level": level,
                }
            },
            "loggers": {name: {"level": "WARNING"} for name in _QUIET_LOGGERS},
            "root": {"handlers": ["console"], "level": level},
        }
    )


def get_logger(name: str) -> logging.Logger:
    """Return a logger within the ``riddle`` namespace."""

    if name.startswith(BASE_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{BASE_LOGGER_NAME}.{name}")


@contextmanager
def logging_context(
    *,
    chat_id: int | str | None = None,
    round_id: str | None = None,
    player: str | None = None,
) -> Iterator[None]:
    """Bind identifiers to log records emitted inside the block; ``None`` keeps the outer value."""

    values = {"chat_id": chat_id, "round_id": round_id, "player": player}
    tokens = [
        (_CONTEXT_FIELDS[name], _CONTEXT_FIELDS[name].set(str(value)))
        for name, value in values.items()
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)
