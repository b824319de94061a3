import logging
import os
import sys

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"


class CategoryFilter(logging.Filter):
    """Pass only records whose last logger name part (resolver, native, ...) is listed."""

    def __init__(self, categories: set[str]):
        super().__init__()
        self.categories = categories

    def filter(self, record: logging.LogRecord) -> bool:
        return (record.name or "").rsplit(".", 1)[-1] in self.categories


def _env_level(default: int) -> int:
    raw = (os.getenv("WEBP_DECODER_LOG_LEVEL") or "").strip().lower()
    return _LEVELS.get(raw, default)


def _env_categories() -> set[str]:
    raw = os.getenv("WEBP_DECODER_LOG_CATS") or ""
    return {c.strip() for c in raw.split(",") if c.strip()}


def _stderr_handler(logger: logging.Logger) -> logging.StreamHandler:
    for h in logger.handlers:
        if isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr:
            return h
    handler = logging.StreamHandler(stream=sys.stderr)
    logger.addHandler(handler)
    return handler


def setup_logger(level: int = logging.INFO, name: str = "webp_decoder") -> logging.Logger:
    """Create or update the package logger.

    - Re-reads WEBP_DECODER_LOG_LEVEL/WEBP_DECODER_LOG_CATS on every call, so
      options the CLI puts into the environment still take effect.
    - Keeps exactly one stderr StreamHandler and refreshes its formatter and
      category filter instead of adding another one.
    """
    logger = logging.getLogger(name)
    logger.setLevel(_env_level(level))

    handler = _stderr_handler(logger)
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%H:%M:%S"))

    handler.filters.clear()
    categories = _env_categories()
    if categories:
        handler.addFilter(CategoryFilter(categories))

    # Host applications get our records only through this handler
    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = setup_logger()
    return base if not name else base.getChild(name)
