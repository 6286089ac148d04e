"""Sensitive-data redaction and heuristic code-safety scanning.

These checks are best-effort pattern matches, not a sound security boundary.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from ..types import SafetyReport

REDACTED = "[REDACTED]"

# Separator between a secret-sounding key and its value: `key = "v"`, `"key": "v"`,
# `key: v`, `KEY=v`.
_SEP = r"""['"]?(?:\s*[:=]\s*['"]|\s*:\s*|=)"""

# Patterns with a `secret` group only redact that group; others redact the whole match.
# Order matters: URIs are redacted before the host/IP patterns can split them.
SENSITIVE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "private_key_block",
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
    ),
    ("private_key_header", re.compile(r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----")),
    ("certificate_header", re.compile(r"-----BEGIN CERTIFICATE-----")),
    # Anchored on letters, not \b: a redaction marker must not create a new match start.
    (
        "database_uri",
        re.compile(r"(?<![A-Za-z])(?:mongodb(?:\+srv)?|postgres(?:ql)?|mysql|redis|amqp)://[^\s'\"]+", re.I),
    ),
    ("aws_access_key", re.compile(r"\b(?:AKIA|ABIA|ACCA|ASIA)[A-Z0-9]{16}\b")),
    (
        "aws_secret",
        re.compile(r"\baws_?(?:access_?key|secret)\w*" + _SEP + r"(?P<secret>[A-Za-z0-9/+=]{20,})", re.I),
    ),
    ("bot_token", re.compile(r"\b[0-9]{8,}:[A-Za-z0-9_-]{30,}")),
    ("openai_style_key", re.compile(r"\b(?:sk|pk)-[A-Za-z0-9_-]{20,}")),
    ("github_token", re.compile(r"\bghp_[A-Za-z0-9]{20,}\b")),
    (
        "api_key",
        re.compile(r"\b\w*api[_-]?key\w*" + _SEP + r"(?P<secret>[A-Za-z0-9_\-]{20,})", re.I),
    ),
    ("bearer_token", re.compile(r"\bbearer\s+(?P<secret>[A-Za-z0-9_.\-=]{20,})", re.I)),
    (
        "auth_token",
        re.compile(r"\b\w*(?:token|auth)\w*" + _SEP + r"(?P<secret>[A-Za-z0-9_.\-]{20,})", re.I),
    ),
    (
        "password",
        re.compile(
            r"\b\w*(?:password|passwd|pwd|secret)\w*" + _SEP + r"(?!\[REDACTED\])(?P<secret>[^\s'\"]{8,})",
            re.I,
        ),
    ),
    ("home_path", re.compile(r"(?:/Users/|/home/|C:\\Users\\)[^\s'\"]+", re.I)),
    ("ipv4", re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b")),
    ("localhost_port", re.compile(r"(?<=localhost:)\d+", re.I)),
]

SENSITIVE_KEYWORDS = [
    "api_key",
    "apikey",
    "api-key",
    "secret",
    "password",
    "passwd",
    "token",
    "bearer",
    "credential",
    "private_key",
    "privatekey",
    "access_key",
    "secret_key",
    ".env",
    "database_url",
    "connection_string",
]

_KEYWORD_VALUE = re.compile(r"""^['":\s=]*['"]?[A-Za-z0-9_.\-]{10,}""")

# Structural rewrites for code.
_PY_SECRET_ASSIGN = re.compile(
    r"""^(?P<indent>[ \t]*)(?P<name>\w*(?:key|token|secret|password|api)\w*)\s*(?::\s*str\s*)?=\s*(?P<q>['"])[^'"\n]{20,}(?P=q)""",
    re.I | re.M,
)
_JS_SECRET_DECL = re.compile(
    r"""\b(?P<decl>const|let|var)\s+(?P<name>\w*(?:key|token|secret|password|api)\w*)\s*=\s*(?P<q>['"])[^'"\n]{20,}(?P=q)""",
    re.I,
)
_SOLE_LITERAL_ARG = re.compile(r"""\(\s*(?P<q>['"])[A-Za-z0-9_.\-]{32,}(?P=q)\s*\)""")

# Code-safety heuristics.
_FS_API = re.compile(
    r"\bopen\s*\(|\.(?:read_text|read_bytes|write_text|write_bytes|open)\s*\(|\bshutil\.\w+\s*\("
    r"|\bos\.(?:remove|unlink|rename|listdir|scandir|walk)\s*\(|\b(?:readFileSync|writeFileSync|readFile|writeFile"
    r"|appendFileSync|createReadStream|createWriteStream)\b|\brequire\s*\(\s*['\"](?:node:)?fs['\"]\s*\)"
)
_ABS_PATH_LITERAL = re.compile(r"""['"](?P<path>(?:/(?=[^'"\s/])|~/|[A-Za-z]:\\)[^'"\n]*)['"]""")
_SECRET_ENV_READ = re.compile(
    r"""(?:process\.env\.|os\.environ\s*\[\s*['"]|os\.environ\.get\s*\(\s*['"]|\bgetenv\s*\(\s*['"])"""
    r"""[A-Z0-9_]*(?:KEY|TOKEN|SECRET|PASSWORD)""",
    re.I,
)
_SUSPICIOUS_EXEC = re.compile(
    r"(?:\bsubprocess\.\w+|\bos\.system|\bos\.popen|\bPopen|\bexecSync|\bexec|\bspawn)\s*\([^)]*"
    r"(?:\bcurl\b|\bwget\b|\bnc\s|\bscp\s|cat\s+/|cat\s+~)",
    re.I,
)
_EXFIL_NETWORK = re.compile(
    r"(?:\bfetch|\baxios(?:\.\w+)?|\bhttp\.get|\brequests\.\w+|\bhttpx\.\w+|\burlopen|\burllib\.request\.\w+)\s*\([^)]*"
    r"(?:ngrok|requestbin|webhook\.site|pipedream|pastebin|interact\.sh|burpcollaborator)",
    re.I,
)

_PYTHON_LANGUAGES = {"python", "py", "python3"}


def _redact_match(m: re.Match[str]) -> str:
    if "secret" in m.re.groupindex and m.group("secret") is not None:
        start = m.start("secret") - m.start()
        end = m.end("secret") - m.start()
        whole = m.group(0)
        return whole[:start] + REDACTED + whole[end:]
    return REDACTED


def redact_text(s: str, *, max_len: int = 400) -> str:
    """Redact common secret patterns and truncate.

    Used for telemetry payloads, which should never capture tokens or secrets.
    """
    if not s:
        return ""
    out = s
    for _, pat in SENSITIVE_PATTERNS:
        out = pat.sub(_redact_match, out)
    out = out.strip()
    if len(out) > max_len:
        out = out[:max_len] + "...(truncated)"
    return out


class ContentFilter:
    """Redacts sensitive data from text/code and scans generated code."""

    def __init__(self, sandbox_root: Path | str | None = None):
        self.sandbox_root = Path(sandbox_root).resolve() if sandbox_root is not None else None
        self.blocked_count = 0

    def sanitize(self, text: str) -> str:
        """Replace every sensitive match with the redaction marker."""
        if not text:
            return text

        def _count(m: re.Match[str]) -> str:
            self.blocked_count += 1
            return _redact_match(m)

        sanitized = text
        for _, pattern in SENSITIVE_PATTERNS:
            sanitized = pattern.sub(_count, sanitized)
        return sanitized

    def contains_sensitive_data(self, text: str) -> bool:
        if not text:
            return False

        for _, pattern in SENSITIVE_PATTERNS:
            if pattern.search(text):
                return True

        lower = text.lower()
        for keyword in SENSITIVE_KEYWORDS:
            if keyword in lower and self._looks_like_secret(text, lower, keyword):
                return True
        return False

    @staticmethod
    def _looks_like_secret(text: str, lower: str, keyword: str) -> bool:
        """True if some occurrence of `keyword` is followed by an opaque value."""
        idx = lower.find(keyword)
        while idx != -1:
            after = text[idx + len(keyword) : idx + len(keyword) + 100]
            if _KEYWORD_VALUE.match(after):
                return True
            idx = lower.find(keyword, idx + 1)
        return False

    def sanitize_code(self, code: str, language: str = "python") -> str:
        """Sanitize code before it is written or shared.

        On top of `sanitize`, hardcoded secret declarations are rewritten to read
        from the environment and long literal call arguments are replaced.
        """
        sanitized = self.sanitize(code)
        python = language.strip().lower() in _PYTHON_LANGUAGES

        def _py_assign(m: re.Match[str]) -> str:
            self.blocked_count += 1
            name = m.group("name")
            return f'{m.group("indent")}{name} = os.environ.get("{name.upper()}", "")  # {REDACTED}'

        def _js_decl(m: re.Match[str]) -> str:
            self.blocked_count += 1
            name = m.group("name")
            return f"{m.group('decl')} {name} = process.env.{name.upper()} /* {REDACTED} */"

        def _sole_arg(_: re.Match[str]) -> str:
            self.blocked_count += 1
            if python:
                return f'("{REDACTED}")'
            return f"(process.env.SECRET /* {REDACTED} */)"

        sanitized = _JS_SECRET_DECL.sub(_js_decl, sanitized)
        sanitized = _PY_SECRET_ASSIGN.sub(_py_assign, sanitized)
        sanitized = _SOLE_LITERAL_ARG.sub(_sole_arg, sanitized)
        return sanitized

    def is_code_safe(self, code: str) -> SafetyReport:
        """Heuristic static scan of generated code."""
        issues: list[str] = []

        if _FS_API.search(code) and self._has_path_outside_sandbox(code):
            issues.append("Attempts to access files outside sandbox")

        if _SECRET_ENV_READ.search(code):
            issues.append("Attempts to access sensitive environment variables")

        if _SUSPICIOUS_EXEC.search(code):
            issues.append("Attempts to execute suspicious commands")

        if _EXFIL_NETWORK.search(code):
            issues.append("Attempts to send data to external services")

        return SafetyReport(safe=not issues, issues=issues)

    def _has_path_outside_sandbox(self, code: str) -> bool:
        for m in _ABS_PATH_LITERAL.finditer(code):
            raw = m.group("path")
            if raw.startswith("~"):
                return True
            if self.sandbox_root is None:
                return True
            normalized = Path(os.path.normpath(raw))
            if normalized != self.sandbox_root and self.sandbox_root not in normalized.parents:
                return True
        return False

    def stats(self) -> dict[str, Any]:
        return {"blocked_count": self.blocked_count}
