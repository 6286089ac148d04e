"""Security guards for the mutation pipeline.

- Path trust boundary (sandbox.py)
- Sensitive-data redaction and code-safety heuristics (filter.py)
"""

from .filter import REDACTED, ContentFilter, redact_text
from .sandbox import BLOCKED_EXTENSIONS, BLOCKED_PATHS, SandboxGuard

__all__ = [
    "BLOCKED_EXTENSIONS",
    "BLOCKED_PATHS",
    "REDACTED",
    "ContentFilter",
    "SandboxGuard",
    "redact_text",
]
