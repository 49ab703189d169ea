"""
Key pattern matching shared by the store, invalidation and warming.

A pattern is either a compiled regular expression, matched with
``search``, or a string. Strings containing ``*`` or ``?`` are globs
matched against the whole key; any other string matches one key exactly.
String patterns may carry ``{entity_type}``, ``{entity_id}`` and
``{user_id}`` placeholders that are rendered before matching.
"""

import fnmatch
import re
from typing import Callable, Pattern, Union

KeyPattern = Union[str, Pattern[str]]
KeyMatcher = Callable[[str], bool]

_PLACEHOLDERS = ('entity_type', 'entity_id', 'user_id')


def is_glob(pattern: str) -> bool:
    return '*' in pattern or '?' in pattern


def compile_key_pattern(pattern: KeyPattern) -> KeyMatcher:
    """Build a predicate matching cache keys against a pattern."""
    if isinstance(pattern, re.Pattern):
        return lambda key: pattern.search(key) is not None

    if not isinstance(pattern, str):
        raise TypeError(f"Unsupported key pattern type: {type(pattern).__name__}")

    if is_glob(pattern):
        regex = re.compile(fnmatch.translate(pattern))
        return lambda key: regex.match(key) is not None

    return lambda key: key == pattern


def render_pattern(pattern: KeyPattern, **values) -> KeyPattern:
    """Substitute event placeholders in a string pattern.

    Missing values become ``*`` so the rendered pattern still matches every
    candidate for that segment.
    """
    if not isinstance(pattern, str):
        return pattern

    rendered = pattern
    for placeholder in _PLACEHOLDERS:
        token = '{' + placeholder + '}'
        if token in rendered:
            value = values.get(placeholder)
            rendered = rendered.replace(token, str(value) if value is not None else '*')
    return rendered


def normalize_pattern(pattern: KeyPattern) -> KeyPattern:
    """Lower-case string patterns to line up with normalised cache keys."""
    if isinstance(pattern, str):
        return pattern.strip().lower()
    return pattern


def describe_pattern(pattern: KeyPattern) -> str:
    """Human readable form of a pattern for logs and metric tags."""
    if isinstance(pattern, re.Pattern):
        return f"/{pattern.pattern}/"
    return str(pattern)
