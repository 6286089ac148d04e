"""Provenance headers embedded in generated files."""

from __future__ import annotations

_HASH_COMMENT = {"python", "py", "python3", "shell", "sh", "bash", "yaml", "yml", "toml", "ruby", "rb", "r", "perl"}
_DASH_COMMENT = {"sql", "lua", "haskell"}
_NO_COMMENT = {"json"}


def render_header(lines: list[str], language: str) -> str:
    """Render `lines` as a comment block in the syntax of `language`.

    Returns an empty string for formats with no comment syntax (JSON).
    """
    lang = language.strip().lower()
    flat: list[str] = []
    for ln in lines:
        flat.extend(ln.splitlines() or [""])

    if lang in _NO_COMMENT:
        return ""
    if lang in _HASH_COMMENT:
        return "\n".join(f"# {ln}".rstrip() for ln in flat) + "\n"
    if lang in _DASH_COMMENT:
        return "\n".join(f"-- {ln}".rstrip() for ln in flat) + "\n"

    body = "\n".join(f" * {ln.replace('*/', '* /')}".rstrip() for ln in flat)
    return f"/**\n{body}\n */\n"


def wrap(lines: list[str], language: str, code: str) -> str:
    header = render_header(lines, language)
    body = code if code.endswith("\n") else code + "\n"
    return f"{header}\n{body}" if header else body
