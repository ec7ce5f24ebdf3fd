"""Library utilities for the Markup worker."""

from .secret_redactor import SecretRedactor
from .json_logger import (
    JSONFormatter,
    StructuredLoggerAdapter,
    setup_json_logging,
    get_structured_logger,
    job_logger,
)

__all__ = [
    # Redaction
    "SecretRedactor",
    # JSON logging
    "JSONFormatter",
    "StructuredLoggerAdapter",
    "setup_json_logging",
    "get_structured_logger",
    "job_logger",
]
