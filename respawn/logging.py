from __future__ import annotations

import logging
import sys
from typing import Any, Dict, Optional, Tuple

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.utils import event_from_exception

# for info on logging formats see: https://docs.python.org/3/library/logging.html#logrecord-attributes
LOG_FORMAT = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "exception": logging.ERROR,
    "critical": logging.CRITICAL,
}


class SentryProcessor:
    """
    structlog processor that forwards events at or above `level` to Sentry.

    Events keep flowing down the processor chain unchanged.
    """

    def __init__(self, level: int = logging.WARNING, active: bool = True) -> None:
        self.level = level
        self.active = active

    @staticmethod
    def _get_event_and_hint(event_dict: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        exc_info = event_dict.get("exc_info")
        if exc_info is True:
            exc_info = sys.exc_info()
        if isinstance(exc_info, BaseException):
            exc_info = (type(exc_info), exc_info, exc_info.__traceback__)
        has_exc_info = isinstance(exc_info, tuple) and exc_info[0] is not None

        if has_exc_info:
            client_options = sentry_sdk.get_client().options
            event, hint = event_from_exception(exc_info, client_options=client_options)
        else:
            event, hint = {}, None

        event["message"] = event_dict.get("event")
        event["level"] = event_dict.get("level")
        event["extra"] = {k: repr(v) for k, v in event_dict.items() if k != "exc_info"}
        return event, hint

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("level", method_name)
        if self.active and _LEVELS.get(method_name, logging.NOTSET) >= self.level:
            event, hint = self._get_event_and_hint(event_dict)
            sentry_sdk.capture_event(event, hint=hint)
        return event_dict


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(stream=sys.stdout, level=level, format=LOG_FORMAT)
    sentry_sdk.init(
        send_default_pii=True,
        integrations=[LoggingIntegration(level=None, event_level=None)],
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            SentryProcessor(level=logging.WARNING),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.KeyValueRenderer(key_order=["event"], sort_keys=True),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
