import re

# Simple, pragmatic patterns
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,62}[a-z0-9])?$")

def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", val).strip()
    if not s:
        return None
    return s[:max_len]

def clean_text(val: str | None, max_len: int = 5000) -> str | None:
    """Like clean_str but keeps line breaks (free-text answers)."""
    if val is None:
        return None
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in val.splitlines()]
    s = "\n".join(lines).strip()
    s = re.sub(r"\n{3,}", "\n\n", s)
    if not s:
        return None
    return s[:max_len]

def is_valid_email(val: str | None) -> bool:
    if not val:
        return False
    return bool(_EMAIL_RE.match(val))

def is_valid_slug(val: str | None) -> bool:
    """Lowercase letters, digits and inner hyphens; no dots (relay addresses split on them)."""
    if not val:
        return False
    return bool(_SLUG_RE.match(val))
