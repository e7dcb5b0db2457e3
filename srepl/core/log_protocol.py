"""
Line-oriented log protocol between probed modules and the watcher.

Each line of the log file is one probe observation:

    relative/path.py:LINE[:COLUMN] :: percent-encoded-result

The result is percent-encoded so newlines or the delimiter inside a value
can never break line-oriented parsing. Paths are stored relative to a base
directory and resolved against it again on decode.
"""

import linecache
import os
import re
import threading
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

from .log_entry import LogEntry
from .value_format import format_value

DELIMITER = ' :: '

# Same safe set as encodeURIComponent, so logs stay readable across tools
_SAFE_CHARS = "!~*'()"

# `File "/path/to/mod.py", line 12, in <module>`
_FRAME_RE = re.compile(r'^\s*File "(?P<path>[^"]+)", line (?P<line>\d+)')

_append_lock = threading.Lock()


def encode(base_dir: str, entry: LogEntry) -> str:
    """Render a log entry as a single log line (without trailing newline)."""
    relative = os.path.relpath(entry.file_path, base_dir)
    parts = [relative, str(entry.line)]
    if entry.column is not None:
        parts.append(str(entry.column))
    location = ':'.join(parts)
    # Lone surrogates from odd __repr__s must not break the line
    result = quote(entry.result, safe=_SAFE_CHARS, errors='backslashreplace')
    return f"{location}{DELIMITER}{result}"


def _is_drive(text: str) -> bool:
    return len(text) == 1 and text.isalpha()


def _parse_int(text: str) -> Optional[int]:
    text = text.strip()
    if not text or not text.lstrip('-').isdigit():
        return None
    return int(text)


def parse_location(location: str) -> Optional[Tuple[str, int, Optional[int]]]:
    """
    Split 'path:line[:column]' into its parts.

    Any '?query' suffix on the path is dropped. Returns None when there is
    no path, the line is not an integer, or a present column is not one.
    A colon left in the path is only accepted after a drive letter
    ('C:/x/mod.py:3').
    """
    head, sep, last = location.rpartition(':')
    if not sep or not head:
        return None

    last_value = _parse_int(last)
    if last_value is None:
        return None

    path, line, column = head, last_value, None
    prev_head, prev_sep, prev = head.rpartition(':')
    if prev_sep:
        prev_value = _parse_int(prev)
        if prev_value is not None and prev_head:
            path, line, column = prev_head, prev_value, last_value
        elif not _is_drive(prev_head):
            return None

    # Remove any cache busting artifacts
    path = path.split('?', 1)[0]
    if not path:
        return None
    return path, line, column


def decode(base_dir: str, log_line: str) -> Optional[LogEntry]:
    """Parse one log line back into a LogEntry, or None if malformed."""
    index = log_line.find(DELIMITER)
    if index == -1:
        return None

    parsed = parse_location(log_line[:index])
    if parsed is None:
        return None

    relative, line, column = parsed
    result = unquote(log_line[index + len(DELIMITER):].rstrip('\r\n'))
    file_path = os.path.normpath(os.path.join(base_dir, relative))
    return LogEntry(file_path=file_path, line=line, column=column, result=result)


def _is_real_file(filename: str) -> bool:
    # <stdin>, <string>, <frozen ...> and friends have no source to annotate
    return bool(filename) and not (filename.startswith('<') and filename.endswith('>'))


def _frame_column(frame, filename: str, line: int) -> Optional[int]:
    """1-indexed character column of the call a frame is executing, if known.

    CPython reports col_offset in UTF-8 bytes; the source line turns it
    back into characters.
    """
    positions = getattr(frame, 'positions', None)
    if positions is None:
        return None
    col_offset = getattr(positions, 'col_offset', None)
    if col_offset is None:
        return None
    source_line = linecache.getline(filename, line)
    if not source_line:
        return col_offset + 1
    prefix = source_line.encode('utf-8')[:col_offset]
    return len(prefix.decode('utf-8', 'replace')) + 1


def _frame_line(frame) -> Optional[int]:
    positions = getattr(frame, 'positions', None)
    line = getattr(positions, 'lineno', None) if positions is not None else None
    return line if line is not None else getattr(frame, 'lineno', None)


def derive_from_stack(frames: Sequence[Any], value: Any) -> Optional[LogEntry]:
    """
    Build a log entry for a probe call from a structured call stack.

    Args:
        frames: Innermost-first frames (e.g. inspect.stack(0)); frames[0]
            is the probe itself and frames[1] its immediate caller.
        value: The probed value

    Returns:
        LogEntry located at the caller, or None when there is no usable
        caller frame.
    """
    if len(frames) < 2:
        return None

    caller = frames[1]
    filename = getattr(caller, 'filename', None)
    if not filename or not _is_real_file(filename):
        return None

    line = _frame_line(caller)
    if line is None:
        return None

    path = os.path.abspath(filename.split('?', 1)[0])
    return LogEntry(
        file_path=path,
        line=line,
        column=_frame_column(caller, filename, line),
        result=format_value(value),
    )


def derive_from_stack_text(stack_text: str, value: Any) -> Optional[LogEntry]:
    """
    Build a log entry from a formatted Python stack (most recent call last).

    The last frame is taken to be the probe and the one before it the
    caller. Frames written as 'File "path:line:col"' keep their column;
    everything else gets an unknown column.
    """
    locations: List[Tuple[str, int, Optional[int]]] = []
    for raw in stack_text.splitlines():
        match = _FRAME_RE.match(raw)
        if not match:
            continue
        path = match.group('path')
        line = int(match.group('line'))
        column = None
        parsed = parse_location(path)
        if parsed is not None:
            path, _, column = parsed
        locations.append((path.split('?', 1)[0], line, column))

    if len(locations) < 2:
        return None

    path, line, column = locations[-2]
    if not _is_real_file(path):
        return None
    return LogEntry(
        file_path=os.path.abspath(path),
        line=line,
        column=column,
        result=format_value(value),
    )


def append_entry(log_path, base_dir: str, entry: LogEntry) -> None:
    """Append one encoded entry to the log file."""
    line = encode(base_dir, entry) + '\n'
    with _append_lock:
        with open(log_path, 'a', encoding='utf-8') as f:
            f.write(line)


def parse_lines(base_dir: str, lines: Iterable[str]) -> List[LogEntry]:
    """Decode every well-formed line, silently skipping the rest."""
    entries = []
    for raw in lines:
        entry = decode(base_dir, raw)
        if entry is not None:
            entries.append(entry)
    return entries


def read_log(log_path, base_dir: str) -> List[LogEntry]:
    """Read and parse the whole log file. Raises OSError if it is missing."""
    content = Path(log_path).read_text(encoding='utf-8')
    return parse_lines(base_dir, content.split('\n'))
