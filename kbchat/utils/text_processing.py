import re
from typing import Any, Iterable, List


def clean_text(s: str) -> str:
    s = s.replace("\u00a0", " ")
    s = re.sub(r"\s+", " ", s).strip()
    return s


def clean_lines(items: Iterable[Any]) -> List[str]:
    """Clean each string item, dropping non-strings and blanks."""
    out = []
    for item in items:
        if isinstance(item, str):
            item = clean_text(item)
            if item:
                out.append(item)
    return out


def truncate(s: str, limit: int) -> str:
    if limit <= 0 or len(s) <= limit:
        return s
    return s[: max(0, limit - 1)].rstrip() + "…"
