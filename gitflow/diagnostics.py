import json
import logging
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def debug_payload(logger: logging.Logger, what: str, payload: Any) -> None:
    """Log a JSON dump of an event or API response when DEBUG is on.

    Serialization is best-effort: a payload that cannot be dumped is dropped.
    """
    if not logger.isEnabledFor(logging.DEBUG):
        return
    if not isinstance(payload, str):
        try:
            payload = json.dumps(payload, sort_keys=True)
        except (TypeError, ValueError):
            return
    logger.debug("%s: %s", what, payload)
