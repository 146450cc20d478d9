"""Secret masking for log lines, tool output and reports."""
from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

# Values that look like credentials wherever they appear in text.
VALUE_PATTERNS = [
    re.compile(r"sk-[a-zA-Z0-9_-]{20,}", re.IGNORECASE),  # OpenAI/OpenRouter style
    re.compile(r"Bearer\s+[a-zA-Z0-9._-]+", re.IGNORECASE),
    re.compile(r"gh[pousr]_[A-Za-z0-9]{20,}"),
]

# Mapping keys whose values are always hidden.
KEY_PATTERN = re.compile(r"(api[-_]?key|secret|password|passwd|token|authorization)", re.IGNORECASE)


def mask_text(text: str) -> str:
    masked = text
    for pattern in VALUE_PATTERNS:
        masked = pattern.sub(REDACTED, masked)
    return masked


def mask_secrets(data: Any) -> Any:
    """Recursively redact sensitive values from dicts, lists and strings."""
    if isinstance(data, dict):
        new_dict = {}
        for k, v in data.items():
            if isinstance(k, str) and KEY_PATTERN.search(k) and v:
                new_dict[k] = REDACTED
            else:
                new_dict[k] = mask_secrets(v)
        return new_dict
    elif isinstance(data, (list, tuple)):
        return [mask_secrets(i) for i in data]
    elif isinstance(data, str):
        return mask_text(data)
    return data
