"""Line-oriented search-and-replace tolerant of model-generated snippets.

Agents quote the block they want to change, and their quotes drift from the
file: escaped newlines, reflowed indentation, a slightly misremembered line.
``smart_replace`` tries progressively looser strategies and stops at the first
that finds anything:

1. exact line-block match;
2. match after collapsing whitespace on every line;
3. fuzzy match: first and last line equal after normalization, the last line
   found within five lines of where it is expected, and at least 80%
   positional character similarity over the quoted block.

More than one match is an error unless ``replace_all`` is set.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass

FUZZY_THRESHOLD = 0.8
FUZZY_SLACK = 5

_ESCAPES = re.compile(r"\\([ntr\\])")
_ESCAPE_MAP = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\"}
_WHITESPACE = re.compile(r"\s+")


class EditError(ValueError):
    """The replacement could not be applied unambiguously."""


@dataclass(frozen=True)
class Match:
    start: int
    end: int
    """Inclusive index of the last matched line."""


@dataclass(frozen=True)
class EditResult:
    content: str
    diff: str
    replacements: int


def unescape(text: str) -> str:
    """Decode literal ``\\n``, ``\\t``, ``\\r`` and ``\\\\`` sequences."""
    return _ESCAPES.sub(lambda m: _ESCAPE_MAP[m.group(1)], text)


def normalize(line: str) -> str:
    return _WHITESPACE.sub(" ", line).strip()


def line_similarity(a: str, b: str) -> float:
    """Share of equal characters at equal positions, after normalization."""
    a, b = normalize(a), normalize(b)
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return sum(1 for x, y in zip(a, b, strict=False) if x == y) / longest


def _block_matches(file_lines: list[str], old_lines: list[str], *, key=None) -> list[Match]:  # type: ignore[no-untyped-def]
    key = key or (lambda line: line)
    wanted = [key(line) for line in old_lines]
    size = len(old_lines)
    matches: list[Match] = []
    for i in range(len(file_lines) - size + 1):
        if matches and i <= matches[-1].end:
            continue
        if all(key(file_lines[i + j]) == wanted[j] for j in range(size)):
            matches.append(Match(i, i + size - 1))
    return matches


def _fuzzy_matches(file_lines: list[str], old_lines: list[str]) -> list[Match]:
    if len(old_lines) < 2:
        return []
    first, last = normalize(old_lines[0]), normalize(old_lines[-1])
    matches: list[Match] = []
    for i, line in enumerate(file_lines):
        if normalize(line) != first or (matches and i <= matches[-1].end):
            continue
        for j in range(i + len(old_lines) - 1, min(len(file_lines), i + len(old_lines) + FUZZY_SLACK)):
            if normalize(file_lines[j]) != last:
                continue
            total = sum(
                line_similarity(file_lines[i + k], old)
                for k, old in enumerate(old_lines)
                if i + k < len(file_lines)
            )
            if total / len(old_lines) >= FUZZY_THRESHOLD:
                # Nearest closing line wins; later ones would overlap this block.
                matches.append(Match(i, j))
                break
    return matches


def find_matches(file_lines: list[str], old_lines: list[str]) -> list[Match]:
    return (
        _block_matches(file_lines, old_lines)
        or _block_matches(file_lines, old_lines, key=normalize)
        or _fuzzy_matches(file_lines, old_lines)
    )


def smart_replace(content: str, old: str, new: str, replace_all: bool = False) -> tuple[str, int]:
    """Replace the block *old* with *new* in *content*.

    Returns the new content and the number of blocks replaced.
    Raises ``EditError`` when nothing matches, or when several blocks match
    and *replace_all* is false.
    """
    file_lines = content.split("\n")
    old_lines = unescape(old).split("\n")
    new_lines = unescape(new).split("\n")

    matches = find_matches(file_lines, old_lines)
    if not matches:
        msg = "Could not find a suitable match for the provided old content in the file"
        raise EditError(msg)
    if len(matches) > 1 and not replace_all:
        msg = f"Found {len(matches)} matches but replace_all is false. Enable replace_all to replace all occurrences."
        raise EditError(msg)

    # Bottom-up so earlier line indices stay valid.
    for match in sorted(matches, key=lambda m: m.start, reverse=True):
        file_lines[match.start : match.end + 1] = new_lines
    return "\n".join(file_lines), len(matches)


def edit_text(path: str, content: str, old: str, new: str, replace_all: bool = False) -> EditResult:
    """``smart_replace`` plus a unified diff of the change."""
    updated, count = smart_replace(content, old, new, replace_all)
    diff = "".join(
        difflib.unified_diff(
            content.splitlines(keepends=True),
            updated.splitlines(keepends=True),
            fromfile=f"a/{path.lstrip('/')}",
            tofile=f"b/{path.lstrip('/')}",
        )
    )
    return EditResult(content=updated, diff=diff, replacements=count)
