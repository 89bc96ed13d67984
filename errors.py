"""
Error types and the error-reporting channel.

Data-layer functions raise the domain errors below; store failures on write
paths are additionally published on an ErrorChannel so that listeners
(logging, dev tooling) see the full operation context.
"""

import json
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel
from pymongo.errors import OperationFailure, PyMongoError

logger = logging.getLogger(__name__)

PERMISSION_ERROR = "permission-error"
STORE_ERROR = "store-error"

# MongoDB "Unauthorized"
UNAUTHORIZED_CODE = 13

Operation = Literal["get", "list", "create", "update", "delete"]


class MarketplaceError(Exception):
    """Base class for errors raised by the data layer."""


class PreconditionError(MarketplaceError):
    """A required related entity is missing or the request cannot apply."""


class PermissionDeniedError(MarketplaceError):
    """The acting user is not allowed to perform the operation."""


class StoreErrorContext(BaseModel):
    path: str
    operation: Operation
    request_payload: Optional[Dict[str, Any]] = None


class StorePermissionError(MarketplaceError):
    def __init__(self, context: StoreErrorContext, cause: Optional[BaseException] = None):
        super().__init__(f"Store operation {context.operation} failed on path: {context.path}")
        self.context = context
        self.cause = cause

    def debug_message(self) -> str:
        lines = [
            "-------------------------------------------",
            "Store operation failed",
            "-------------------------------------------",
            f"Operation: {self.context.operation}",
            f"Path: {self.context.path}",
        ]
        if self.cause is not None:
            lines.append(f"Cause: {type(self.cause).__name__}: {self.cause}")
        if self.context.request_payload:
            lines.append("Request Data: " + json.dumps(self.context.request_payload, indent=2, default=str))
        lines.append("-------------------------------------------")
        return "\n".join(lines)


Handler = Callable[[Any], None]


class ErrorChannel:
    """Publish/subscribe channel for failure events.

    A failing handler is logged and skipped; it never stops the other
    handlers or the publisher.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, event: str, payload: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(payload)
            except Exception:
                logger.exception("Error in handler for %s", event)


def is_permission_denied(exc: BaseException) -> bool:
    return isinstance(exc, OperationFailure) and exc.code == UNAUTHORIZED_CODE


def report_store_failure(
    errors: Optional[ErrorChannel],
    exc: PyMongoError,
    path: str,
    operation: Operation,
    payload: Optional[Dict[str, Any]] = None,
) -> StorePermissionError:
    """Publish a store failure with its context and return the wrapped error."""
    error = StorePermissionError(StoreErrorContext(path=path, operation=operation, request_payload=payload), cause=exc)
    if errors is not None:
        errors.publish(PERMISSION_ERROR if is_permission_denied(exc) else STORE_ERROR, error)
    else:
        logger.error(error.debug_message())
    return error


def log_store_error(error: StorePermissionError) -> None:
    logger.error(error.debug_message())
