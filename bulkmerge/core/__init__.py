"""Core infrastructure: settings, logging, errors, middleware."""

from bulkmerge.core.exceptions import (
    AuthenticationRequired,
    BulkMergeError,
    OperationNotFound,
    PersistenceFault,
    ProviderError,
    SubmissionRejected,
    setup_exception_handlers,
)
from bulkmerge.core.logging import bind_context, get_logger, log_context, setup_logging
from bulkmerge.core.middleware import RequestIdMiddleware
from bulkmerge.core.settings import Settings, get_settings

__all__ = [
    "AuthenticationRequired",
    "BulkMergeError",
    "OperationNotFound",
    "PersistenceFault",
    "ProviderError",
    "SubmissionRejected",
    "setup_exception_handlers",
    "bind_context",
    "get_logger",
    "log_context",
    "setup_logging",
    "RequestIdMiddleware",
    "Settings",
    "get_settings",
]
