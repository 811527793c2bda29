"""Star-only glob matching for shell commands and URLs.

``*`` matches any run of characters, including an empty run, ``/`` and
newlines. Every other character is literal, so ``?`` and ``[`` in URLs need no
escaping. Matching is anchored at both ends and case-sensitive.
"""

import re
from functools import lru_cache


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    """Translate a star pattern into an anchored regular expression."""
    parts = (re.escape(chunk) for chunk in pattern.split("*"))
    return re.compile(".*".join(parts), re.DOTALL)


def matches(pattern: str, text: str) -> bool:
    """Return True when *text* matches *pattern* in full."""
    return compile_pattern(pattern).fullmatch(text) is not None


def first_match(patterns: list[str], text: str) -> str | None:
    """Return the first pattern in *patterns* that matches *text*."""
    for pattern in patterns:
        if matches(pattern, text):
            return pattern
    return None
