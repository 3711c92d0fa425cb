import logging
import logging.config
from typing import Any, Dict

REDACTED = "<redacted>"

_IMAGE_KEYS = {"image", "image_url", "input_image", "start_image_url", "first_frame_image"}


def build_logging_config(level: str = "INFO") -> Dict:
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "level": level,
            }
        },
        "loggers": {
            "httpx": {"level": "WARNING"},
            "botocore": {"level": "WARNING"},
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }


def configure_logging(level: str = "INFO") -> None:
    logging.config.dictConfig(build_logging_config(level))


def redact_payload(value: Any) -> Any:
    """Copy of ``value`` that is safe to log: image fields and data URIs are replaced."""
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if key in _IMAGE_KEYS and isinstance(item, (str, bytes)):
                redacted[key] = REDACTED
            else:
                redacted[key] = redact_payload(item)
        return redacted
    if isinstance(value, (list, tuple)):
        return [redact_payload(item) for item in value]
    if isinstance(value, bytes):
        return REDACTED
    if isinstance(value, str) and value.startswith("data:"):
        return REDACTED
    return value
