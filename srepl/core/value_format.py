"""
Stable, human-readable rendering of probed values.

The rendered text is what ends up inside an annotation, so it has to be
deterministic for equal values and must never raise, whatever the probed
program hands to p().
"""

import pprint
from typing import Any

import numpy as np

# Rendering width before containers wrap onto several lines
DEFAULT_WIDTH = 80

# numpy summarizes arrays larger than this
ARRAY_THRESHOLD = 64


# numpy dtypes repr() leaves implicit
_DEFAULT_DTYPES = {
    np.dtype(np.float64),
    np.dtype(np.int64),
    np.dtype(np.complex128),
    np.dtype(np.bool_),
}


def _format_array(value: np.ndarray) -> str:
    """Render a numpy array like repr() but with a bounded size."""
    if value.ndim == 0:
        return repr(value.item())
    body = np.array2string(
        value,
        separator=', ',
        threshold=ARRAY_THRESHOLD,
        max_line_width=DEFAULT_WIDTH,
        prefix='array(',
    )
    if value.dtype in _DEFAULT_DTYPES:
        return f"array({body})"
    return f"array({body}, dtype={value.dtype})"


def _fallback(value: Any) -> str:
    """Summary used when the value's own repr is unusable."""
    return f"<{type(value).__name__} object>"


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (int, float, complex, str, bytes, bool, type(None)))


def format_value(value: Any, width: int = DEFAULT_WIDTH) -> str:
    """
    Serialize a probed value for display in an annotation.

    Rules:
    1. numpy arrays -> array2string inside array(...)
    2. numpy scalars and builtin scalars -> repr()
    3. containers -> pprint.pformat (recursion safe, dict insertion order)
    4. anything else -> repr(), or '<TypeName object>' if repr raises
    """
    try:
        if isinstance(value, np.ndarray):
            return _format_array(value)
        if isinstance(value, np.generic):
            return repr(value.item())
        if _is_scalar(value):
            return repr(value)
        if isinstance(value, (list, tuple, dict, set, frozenset)):
            return pprint.pformat(value, width=width, sort_dicts=False)
        return repr(value)
    except Exception:
        return _fallback(value)
