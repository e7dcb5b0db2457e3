"""srepl - keeps probe values written next to the calls that produced them."""

__version__ = "0.3.0"

from .core.capture import p

__all__ = ["p", "__version__"]
