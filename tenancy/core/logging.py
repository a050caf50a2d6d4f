"""Logging setup.

Adds a NOTICE level between INFO and WARNING, used for rejected requests
(validation and existence failures) that operators may want to see without
treating them as warnings.
"""

import logging
import sys

NOTICE = 25
logging.addLevelName(NOTICE, "NOTICE")


def notice(logger: logging.Logger, message: str, **context) -> None:
    """Log ``message`` at NOTICE with a structured context dict."""
    logger.log(NOTICE, "%s %s", message, context, extra={"context": context})


def configure_logging(level: str = "INFO") -> None:
    """Attach a stdout handler to the root logger. Call once at startup."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
