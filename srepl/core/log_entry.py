"""Log entry and location - one probe observation and where it happened."""
from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class Location:
    """A position in either an executed artifact or an authored source.

    Both fields are 1-indexed. Which coordinate space a Location belongs to
    is decided by whoever holds it; only the position mapper converts.
    """
    line: int
    column: int


@dataclass(frozen=True)
class LogEntry:
    """One probe observation.

    Frozen for hashability - entries can be grouped and compared freely.
    """
    file_path: str            # Absolute path
    line: int                 # 1-indexed line number
    column: Optional[int]     # 1-indexed column, None when unknown
    result: str               # Serialized value

    @property
    def location(self) -> Optional[Location]:
        """Return the entry's Location, or None when the column is unknown."""
        if self.column is None:
            return None
        return Location(line=self.line, column=self.column)

    def moved_to(self, file_path: str, location: Location) -> 'LogEntry':
        """Return a copy of this entry at another file and location."""
        return replace(self, file_path=file_path, line=location.line, column=location.column)
