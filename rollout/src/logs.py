from __future__ import annotations

import json
import logging
import re
from typing import Any

# Record attributes copied into the JSON line when a call passes them via
# ``extra=``.
CONTEXT_FIELDS = ("operation", "resource", "attempt")

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    # Credentials embedded in kubeconfig documents or Secret manifests.
    (
        re.compile(
            r"(?i)(\b(?:client-key-data|client-certificate-data|token|password|secret)\b"
            r"\"?\s*[:=]\s*\"?)([^\s,;\"]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact(value: str) -> str:
    """Mask bearer tokens and credential values in a log line."""
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with resource context and secrets masked."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact(record.getMessage()),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact(self.formatException(record.exc_info))
        return json.dumps(entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
