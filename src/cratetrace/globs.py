"""Glob patterns for force triggers.

Separators are not special: ``*`` and ``?`` also match ``/``. ``**`` is
recursive when it makes up a whole path component (``**/x``, ``x/**``,
``a/**/b`` or a lone ``**``) and behaves like ``*`` anywhere else. The
start and end of a ``{a,b}`` alternative count as component boundaries.
Classes are negated with either ``[!...]`` or ``[^...]``.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_RECURSIVE_PREFIX = "(?:/?|.*/)"
_RECURSIVE_MIDDLE = "(?:/|/.*/)"
_RECURSIVE_SUFFIX = "/.*"


def normalize_trigger(pattern: str) -> str:
    """Make ``dir/`` match the directory and everything beneath it."""
    if pattern.endswith("/"):
        return pattern + "**"
    return pattern


def _invalid(pattern: str, reason: str) -> ValueError:
    return ValueError(f"Invalid force_trigger glob pattern {pattern!r}: {reason}")


def _translate_class(pattern: str, start: int) -> tuple[str, int]:
    """Translate the ``[...]`` class opening at ``start``; return (regex, next index)."""
    i = start + 1
    n = len(pattern)
    negated = False
    if i < n and pattern[i] in "!^":
        negated = True
        i += 1

    items: list[str] = []
    first = True
    while i < n:
        c = pattern[i]
        if c == "]" and not first:
            body = "".join(items)
            return (f"[^{body}]" if negated else f"[{body}]"), i + 1
        first = False
        if i + 2 < n and pattern[i + 1] == "-" and pattern[i + 2] != "]":
            lo, hi = c, pattern[i + 2]
            if lo > hi:
                raise _invalid(pattern, f"invalid range {lo}-{hi}")
            items.append(f"{re.escape(lo)}-{re.escape(hi)}")
            i += 3
            continue
        items.append(re.escape(c))
        i += 1

    raise _invalid(pattern, "unclosed character class; missing ']'")


def translate(pattern: str) -> str:
    """Translate a glob pattern into an anchored regular expression source.

    Raises:
        ValueError: If the pattern is malformed.
    """
    out: list[str] = []
    i = 0
    n = len(pattern)
    in_alternates = False

    while i < n:
        c = pattern[i]
        if c == "*":
            j = i
            while j < n and pattern[j] == "*":
                j += 1
            if j - i != 2:
                out.append(".*")
                i = j
                continue
            prev = pattern[i - 1] if i > 0 else None
            nxt = pattern[j] if j < n else None
            # Inside {...} each alternative starts and ends its own component.
            at_start = prev is None or (in_alternates and out[-1] in ("(?:", "|"))
            at_end = nxt is None or (in_alternates and nxt in ",}")
            if at_start and at_end:
                out.append(".*")
            elif at_start and nxt == "/":
                out.append(_RECURSIVE_PREFIX)
                j += 1
            elif prev == "/" and at_end and out[-1] == "/":
                out[-1] = _RECURSIVE_SUFFIX
            elif prev == "/" and nxt == "/" and out[-1] == "/":
                out[-1] = _RECURSIVE_MIDDLE
                j += 1
            else:
                out.append(".*")
            i = j
        elif c == "?":
            out.append(".")
            i += 1
        elif c == "[":
            regex, i = _translate_class(pattern, i)
            out.append(regex)
        elif c == "{":
            if in_alternates:
                raise _invalid(pattern, "nested alternate groups are not allowed")
            in_alternates = True
            out.append("(?:")
            i += 1
        elif c == "}":
            if not in_alternates:
                raise _invalid(pattern, "unopened alternate group; missing '{'")
            in_alternates = False
            out.append(")")
            i += 1
        elif c == "," and in_alternates:
            out.append("|")
            i += 1
        elif c == "\\":
            if i + 1 >= n:
                raise _invalid(pattern, "dangling '\\'")
            out.append(re.escape(pattern[i + 1]))
            i += 2
        elif c == "/":
            out.append("/")
            i += 1
        else:
            out.append(re.escape(c))
            i += 1

    if in_alternates:
        raise _invalid(pattern, "unclosed alternate group; missing '}'")

    return "(?s:" + "".join(out) + r")\Z"


def compile_triggers(patterns: list[str]) -> re.Pattern[str] | None:
    """Compile all trigger patterns into one regex; ``None`` when there are none.

    Every pattern is translated before anything is matched, so a single bad
    pattern fails the whole configuration.
    """
    if not patterns:
        return None
    sources = []
    for pattern in patterns:
        normalized = normalize_trigger(pattern)
        sources.append(translate(normalized))
        logger.debug("Force trigger %r compiled from %r", normalized, pattern)
    return re.compile("|".join(f"(?:{s})" for s in sources))
