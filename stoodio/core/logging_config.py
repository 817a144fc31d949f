import logging

from pythonjsonlogger.json import JsonFormatter

from stoodio.core.config import settings


def setup_logging() -> None:
    """Configure structured JSON logging on the root logger."""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
