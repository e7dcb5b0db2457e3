"""
The probe and the capture context it consults.

`p(value)` returns value unchanged. While capture is enabled it also
appends one log entry located at its caller. Capture is disabled by
default, so importing a probed module outside a synchronization cycle
records nothing. Only the module runner enables it.
"""

import inspect
import os
import sys
from dataclasses import dataclass
from typing import Optional, TypeVar

from .log_protocol import append_entry, derive_from_stack
from srepl.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

# Environment variable a runner child reads its log path from
LOG_PATH_ENV = 'SREPL_LOG_PATH'


@dataclass
class CaptureContext:
    """Whether p() records, and where to."""
    enabled: bool = False
    log_path: Optional[str] = None
    base_dir: Optional[str] = None


_context = CaptureContext()


def get_context() -> CaptureContext:
    """Return the process-wide capture context."""
    return _context


def enable(log_path, base_dir: Optional[str] = None) -> None:
    """Start recording p() calls to log_path."""
    _context.log_path = str(log_path)
    _context.base_dir = base_dir or os.path.dirname(os.path.abspath(str(log_path)))
    _context.enabled = True


def disable() -> None:
    """Stop recording p() calls."""
    _context.enabled = False


def p(value: T) -> T:
    """Return value, recording it at the caller's location when capturing."""
    ctx = _context
    if ctx.enabled and ctx.log_path:
        try:
            frames = inspect.getouterframes(sys._getframe(0), context=0)
            entry = derive_from_stack(frames, value)
            if entry is not None:
                append_entry(ctx.log_path, ctx.base_dir, entry)
        except (OSError, ValueError) as e:
            # The probed program must not fail because the log did
            logger.warning(f"could not record probe: {e}")
    return value
