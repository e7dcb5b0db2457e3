"""Exception hierarchy for srepl."""

from enum import Enum


class SreplError(Exception):
    """Base class for all srepl errors."""
    pass


class MapperReason(Enum):
    """Why a position mapper could not be built."""
    NO_BUILD_CONFIG = "no build configuration found"
    EMIT_DISABLED = "build configuration disables emission of derived artifacts"
    SOURCE_MAPS_DISABLED = "build configuration disables source maps"
    MULTIPLE_SOURCE_ROOTS = "build configuration specifies more than one source root"


class MapperConfigError(SreplError):
    """Raised when the build configuration cannot back a position mapper.

    This is a configuration fault: the session keeps running but treats
    every derived artifact as unmappable until it is restarted.
    """

    def __init__(self, reason: MapperReason, config_path=None):
        self.reason = reason
        self.config_path = config_path
        where = f" ({config_path})" if config_path else ""
        super().__init__(f"{reason.value}{where}")


class SourceMapError(SreplError):
    """Raised when a source map file cannot be read or decoded."""
    pass


class ExecutionError(SreplError):
    """Raised when a probed module fails to run to completion."""

    def __init__(self, artifact_path, returncode: int, stderr: str = ""):
        self.artifact_path = artifact_path
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{artifact_path} exited with status {returncode}")
