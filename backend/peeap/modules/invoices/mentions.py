from __future__ import annotations

import re
from dataclasses import asdict, dataclass

_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("invoice", re.compile(r"@invoice(?::([a-zA-Z0-9-]+))?")),
    ("product", re.compile(r"@product:([a-zA-Z0-9_-]+)")),
    ("receipt", re.compile(r"@(?:receipt|transaction):([a-zA-Z0-9-]+)")),
    ("user", re.compile(r"@([a-zA-Z][a-zA-Z0-9_]{2,})")),
)

# Words that introduce typed mentions are never usernames.
_RESERVED = frozenset({"invoice", "product", "receipt", "transaction"})


@dataclass(frozen=True, slots=True)
class Mention:
    type: str
    text: str
    value: str | None
    start_index: int
    end_index: int

    def to_dict(self) -> dict[str, object]:
        d = asdict(self)
        return {
            "type": d["type"],
            "text": d["text"],
            "value": d["value"],
            "startIndex": d["start_index"],
            "endIndex": d["end_index"],
        }


def parse_mentions(content: str) -> list[Mention]:
    """
    Find `@invoice[:id]`, `@product:x`, `@receipt:id` / `@transaction:id`
    and `@username` mentions, ordered by position.
    """
    text = content or ""
    found: list[Mention] = []
    for kind, pattern in _PATTERNS:
        for m in pattern.finditer(text):
            value = m.group(1)
            if kind == "user" and value in _RESERVED:
                continue
            found.append(
                Mention(type=kind, text=m.group(0), value=value or None, start_index=m.start(), end_index=m.end())
            )
    found.sort(key=lambda x: x.start_index)
    return found
