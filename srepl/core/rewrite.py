"""
Annotation rewriting for probed source files.

Probe results are written next to the call that produced them, either as a
trailing comment on the line that closes the call:

    p(['Hello', 'world']) //=> ['Hello', 'world']

or, when any result spans several lines, as a block comment inserted right
below that line:

    p(table)
    /*=> {'a': 1,
         'b': 2}
    */

Everything here is plain text manipulation. The only syntax understood is
parenthesis depth and the annotation markers themselves.
"""

import re
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import PurePath
from typing import Dict, Iterable, List, Optional, Set

from .log_entry import LogEntry


@dataclass(frozen=True)
class AnnotationStyle:
    """The markers used to write and recognize annotations.

    Changing any marker is a breaking format change: annotations written
    with the old markers will no longer be stripped.
    """
    name: str
    trailing: str            # Separates code from a trailing annotation
    block_open: str          # Starts the first line of a block annotation
    block_continuation: str  # Prefix of every following line of a block
    block_close: str         # Ends a block annotation, newline included

    @property
    def trailing_marker(self) -> str:
        """The trailing marker as searched for (no trailing space)."""
        return self.trailing.rstrip()

    @property
    def block_close_line(self) -> str:
        return self.block_close.rstrip('\n')


C_STYLE = AnnotationStyle(
    name='c',
    trailing=' //=> ',
    block_open='/*=> ',
    block_continuation='     ',
    block_close='*/\n',
)

# Every line is a '#' comment so an annotated Python module still imports
HASH_STYLE = AnnotationStyle(
    name='hash',
    trailing=' #=> ',
    block_open='##=> ',
    block_continuation='##   ',
    block_close='#<=\n',
)

HASH_STYLE_SUFFIXES = ('.py', '.pyw', '.coco')

RESULT_SEPARATOR = ', '
BLOCK_RESULT_SEPARATOR = ',\n'


def style_for_path(path) -> AnnotationStyle:
    """Pick the annotation style for an authored source file."""
    suffix = PurePath(str(path)).suffix.lower()
    if suffix in HASH_STYLE_SUFFIXES:
        return HASH_STYLE
    return C_STYLE


def _split_eol(line: str):
    """Split a '\\n'-separated line into its content and a trailing '\\r'."""
    if line.endswith('\r'):
        return line[:-1], '\r'
    return line, ''


def _strip_trailing_line(line: str, style: AnnotationStyle) -> str:
    index = line.find(style.trailing_marker)
    if index == -1:
        return line
    _, eol = _split_eol(line)
    return line[:index] + eol


def strip_trailing(text: str, style: AnnotationStyle = C_STYLE) -> str:
    """Remove every trailing annotation, keeping line breaks intact."""
    return '\n'.join(_strip_trailing_line(line, style) for line in text.split('\n'))


def _strip_blocks(text: str, style: AnnotationStyle) -> str:
    close_re = re.compile(re.escape(style.block_close_line) + r'(?:\r?\n|\Z)')
    stripped = []
    i = 0
    while i < len(text):
        open_index = text.find(style.block_open, i)
        if open_index == -1:
            break

        match = close_re.search(text, open_index + len(style.block_open))
        if match is None:
            break

        # Take the block's own indentation with it
        start = open_index
        line_start = text.rfind('\n', 0, open_index) + 1
        if line_start >= i and not text[line_start:open_index].strip(' \t'):
            start = line_start
            # A block closing at end of text also owns the line break before it
            if match.end() == len(text) and not match.group().endswith('\n') and start > i:
                start -= 1
                if start > i and text[start - 1] == '\r':
                    start -= 1

        stripped.append(text[i:start])
        i = match.end()

    stripped.append(text[i:])
    return ''.join(stripped)


def strip(text: str, style: AnnotationStyle = C_STYLE) -> str:
    """
    Remove every annotation from text.

    Trailing annotations are cut at their marker; block annotations are
    removed from their opening marker through the first closing marker
    after it. Text without markers is returned unchanged.
    """
    return _strip_blocks(strip_trailing(text, style), style)


def find_call_end(lines: List[str], line: int, column: int) -> Optional[int]:
    """
    Find the line that closes the call starting at (line, column).

    Args:
        lines: Source lines, without terminators
        line: 1-indexed line of the call
        column: 1-indexed column to start looking for '(' from

    Returns:
        0-indexed line holding the matching ')', or None when the line has
        no '(' at or after column or the text ends before the call does.
    """
    index = line - 1
    if index < 0 or index >= len(lines):
        return None

    paren_index = lines[index].find('(', max(column - 1, 0))
    if paren_index == -1:
        # Not a call
        return None

    depth = 1
    start_col = paren_index + 1
    for i in range(index, len(lines)):
        current = lines[i]
        for c in range(start_col, len(current)):
            char = current[c]
            if char == '(':
                depth += 1
            elif char == ')':
                depth -= 1
                if depth == 0:
                    return i
        start_col = 0

    return None


def _anchor_column(entries: Iterable[LogEntry]) -> int:
    """Leftmost known column of a group; 1 when no column is known."""
    known = [e.column for e in entries if e.column is not None]
    if not known:
        return 1
    return max(1, min(known))


def _leading_whitespace(line: str) -> str:
    return line[:len(line) - len(line.lstrip(' \t'))]


def _old_block_after(lines: List[str], index: int, style: AnnotationStyle) -> List[int]:
    """Indexes of a block annotation starting right after lines[index]."""
    first = index + 1
    if first >= len(lines) or style.block_open not in lines[first]:
        return []
    for i in range(first + 1, len(lines)):
        if style.block_close_line in lines[i]:
            return list(range(first, i + 1))
    # Unterminated: not ours to delete
    return []


def _render_block(results: List[str], indent: str, eol: str, style: AnnotationStyle) -> str:
    body = BLOCK_RESULT_SEPARATOR.join(results).split('\n')
    block = [style.block_open + body[0]]
    block.extend(style.block_continuation + part for part in body[1:])
    block.append(style.block_close_line)
    return '\n'.join(f"{indent}{part}{eol}" for part in block)


def _group_by_line(entries: Iterable[LogEntry]) -> Dict[int, List[LogEntry]]:
    groups: Dict[int, List[LogEntry]] = {}
    for entry in entries:
        groups.setdefault(entry.line, []).append(entry)
    return groups


def apply(text: str, entries: Iterable[LogEntry], style: AnnotationStyle = C_STYLE) -> str:
    """
    Write entries into text as annotations at their call sites.

    Entries are grouped by line. Each group's call is located by scanning
    for the first '(' at or after the group's leftmost column and following
    parenthesis depth to its close. All results of the group are rendered
    into a single annotation on the closing line: trailing form, or block
    form when any result contains a line break. An existing annotation at
    that site is replaced rather than added to.

    Groups whose call cannot be located are dropped. Line numbers always
    refer to text as passed in, whatever earlier groups changed.
    """
    lines = text.split('\n')
    groups = _group_by_line(entries)

    # Results per call-end line, in source order
    results_by_end: Dict[int, List[str]] = OrderedDict()
    for line_number in sorted(groups):
        group = groups[line_number]
        end = find_call_end(lines, line_number, _anchor_column(group))
        if end is None:
            continue
        results_by_end.setdefault(end, []).extend(e.result for e in group)

    deleted: Set[int] = set()
    replaced: Dict[int, str] = {}
    for end, results in results_by_end.items():
        code, eol = _split_eol(_strip_trailing_line(lines[end], style))
        deleted.update(_old_block_after(lines, end, style))

        if any('\n' in r for r in results):
            block = _render_block(results, _leading_whitespace(code), eol, style)
            replaced[end] = f"{code}{eol}\n{block}"
        else:
            replaced[end] = f"{code}{style.trailing}{RESULT_SEPARATOR.join(results)}{eol}"

    output = [
        replaced.get(i, line)
        for i, line in enumerate(lines)
        if i not in deleted
    ]
    return '\n'.join(output)
