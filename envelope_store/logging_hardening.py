"""Logging Hardening and Redaction.

This module provides filters to prevent sensitive data (envelope ciphertext,
secret key material, searchable hashes) from appearing in application logs.
"""
import logging
import re

SECRET_PATTERNS = [
    (re.compile(r'("ciphertext":\s*")[^"]+(")'), r'\1[REDACTED]\2'),
    (re.compile(r'("value":\s*")[^"]+(")'), r'\1[REDACTED]\2'),
    (re.compile(r'("data":\s*")[^"]+(")'), r'\1[REDACTED]\2'),
    # repr() of pydantic models and keyword-style assignments
    (re.compile(r"(ciphertext=')[^']+(')"), r"\1[REDACTED]\2"),
    (re.compile(r"(value=')[^']+(')"), r"\1[REDACTED]\2"),
    (re.compile(r"(data=')[^']+(')"), r"\1[REDACTED]\2"),
]


def redact(text: str) -> str:
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Filter that redacts secret-like patterns from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                redact(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )

        return True


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger and apply the SecretRedactionFilter everywhere."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    redact_filter = SecretRedactionFilter()

    root_logger = logging.getLogger()
    for f in root_logger.filters[:]:
        if isinstance(f, SecretRedactionFilter):
            root_logger.removeFilter(f)
    root_logger.addFilter(redact_filter)

    # Filters on the root logger do not see records propagated from children
    for name in list(logging.root.manager.loggerDict):
        logger = logging.getLogger(name)
        for f in logger.filters[:]:
            if isinstance(f, SecretRedactionFilter):
                logger.removeFilter(f)
        logger.addFilter(redact_filter)

    for handler in root_logger.handlers:
        if not any(isinstance(f, SecretRedactionFilter) for f in handler.filters):
            handler.addFilter(redact_filter)

    logging.info("Logging redaction filters active.")
