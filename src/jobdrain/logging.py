"""Process-wide logging setup for queue services."""

import logging

_NOISY_LOGGERS = ("dramatiq", "httpx", "uvicorn.access")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once and keep chatty libraries at WARNING."""
    resolved = level.upper()
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    if resolved == "DEBUG":
        return
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
