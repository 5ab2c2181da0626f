"""
Path exclusion for backup archives.

Patterns use recursive glob syntax:
- `*` matches any run of characters within one path segment
- `?` matches one character within a segment
- `[...]` matches a character class
- `**` as a whole segment matches zero or more segments

A path is excluded when it, or any of its ancestor directories, matches a
pattern. Matching is done on forward-slash paths on every platform.
"""

import posixpath
import re
from functools import lru_cache
from typing import Iterable


def normalize_path(path: str) -> str:
    """Convert to forward slashes and drop leading './' and trailing '/'."""
    path = path.replace('\\', '/')
    while path.startswith('./'):
        path = path[2:]
    if len(path) > 1:
        path = path.rstrip('/')
    return path


def _translate_segment(segment: str) -> str:
    """Translate one pattern segment (no '/') into a regex fragment."""
    out = []
    i, n = 0, len(segment)
    while i < n:
        c = segment[i]
        if c == '*':
            # Consecutive stars inside a segment behave like a single star
            while i < n and segment[i] == '*':
                i += 1
            out.append('[^/]*')
            continue
        if c == '?':
            out.append('[^/]')
        elif c == '[':
            j = i + 1
            if j < n and segment[j] in '!^':
                j += 1
            if j < n and segment[j] == ']':
                j += 1
            while j < n and segment[j] != ']':
                j += 1
            if j >= n:
                # Unterminated class is a literal bracket
                out.append(re.escape(c))
            else:
                body = segment[i + 1:j].replace('\\', '\\\\')
                if body[:1] in ('!', '^'):
                    body = '^' + body[1:]
                out.append(f'[{body}]')
                i = j
        else:
            out.append(re.escape(c))
        i += 1
    return ''.join(out)


@lru_cache(maxsize=512)
def compile_pattern(pattern: str):
    """
    Compile a glob pattern into an anchored regular expression.

    Args:
        pattern: Glob pattern, forward or back slashes

    Returns:
        Compiled regex matching whole normalized paths
    """
    segments = normalize_path(pattern).split('/')
    parts = []
    last = len(segments) - 1

    for index, segment in enumerate(segments):
        if segment == '**':
            if index == last:
                # Trailing '**' also matches the directory itself ('a/**' ~ 'a')
                if parts and parts[-1] == '(?:.*/)?':
                    parts[-1] = '.*'
                elif parts:
                    parts[-1] = parts[-1][:-1] if parts[-1].endswith('/') else parts[-1]
                    parts.append('(?:/.*)?')
                else:
                    parts.append('.*')
            else:
                parts.append('(?:.*/)?')
        else:
            fragment = _translate_segment(segment)
            parts.append(fragment if index == last else fragment + '/')

    return re.compile(''.join(parts) + r'\Z', re.DOTALL)


def match(pattern: str, path: str) -> bool:
    """Check whether a single normalized path matches a glob pattern."""
    return compile_pattern(pattern).match(normalize_path(path)) is not None


def is_excluded(relative_path: str, patterns: Iterable[str]) -> bool:
    """
    Check if a path should be excluded from an archive.

    Args:
        relative_path: Path relative to the archive root
        patterns: Exclusion glob patterns

    Returns:
        True if the path or one of its ancestor directories matches a pattern
    """
    patterns = [p for p in patterns if p]
    if not patterns:
        return False

    path = normalize_path(relative_path)
    candidates = [path]
    parent = posixpath.dirname(path)
    while parent not in ('', '.', '/'):
        candidates.append(parent)
        parent = posixpath.dirname(parent)

    for pattern in patterns:
        regex = compile_pattern(pattern)
        for candidate in candidates:
            if regex.match(candidate):
                return True

    return False
