"""Shared logging helpers and the error taxonomy."""

from .exceptions import (
    CampusFlowError,
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    StoreUnavailableError,
)
from .logging import log_execution_time, setup_logger

__all__ = [
    "CampusFlowError",
    "ConfigurationError",
    "InvalidStateError",
    "NotFoundError",
    "StoreUnavailableError",
    "log_execution_time",
    "setup_logger",
]
