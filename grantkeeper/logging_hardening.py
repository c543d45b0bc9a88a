"""Logging Hardening and Redaction.

Keeps account secrets and credential hashes out of application logs.
"""
import logging
import re

SECRET_PATTERNS = [
    # Keyword-based assignments, e.g. "password=Hunter22" or "token: abc"
    (re.compile(r'(?i)\b(password|passwd|secret|token|key)(\s*[=:]\s*)[^\s,;&"\']+'), r'\1\2[REDACTED]'),
    # JSON-ish fields
    (re.compile(r'(?i)("(?:password|secret|token|credential_secret_ref)":\s*")[^"]*(")'), r'\1[REDACTED]\2'),
    # bcrypt hashes
    (re.compile(r'\$2[aby]?\$\d{2}\$[./A-Za-z0-9]{53}'), '[REDACTED_HASH]'),
]


def redact(text: str) -> str:
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Filter that redacts secret-like patterns from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not isinstance(record.msg, str):
            return True

        record.msg = redact(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: redact(v) if isinstance(v, str) else v for k, v in record.args.items()
                }
            else:
                record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)

        return True


def setup_logging_redaction() -> None:
    """Apply the SecretRedactionFilter to the root logger and existing loggers."""
    redact_filter = SecretRedactionFilter()

    root_logger = logging.getLogger()
    for f in root_logger.filters[:]:
        if isinstance(f, SecretRedactionFilter):
            root_logger.removeFilter(f)
    root_logger.addFilter(redact_filter)

    # Filters on a logger do not apply to records propagated from children
    for name in logging.root.manager.loggerDict:
        logger = logging.getLogger(name)
        for f in logger.filters[:]:
            if isinstance(f, SecretRedactionFilter):
                logger.removeFilter(f)
        logger.addFilter(redact_filter)

    logging.info("Logging redaction filters active.")
