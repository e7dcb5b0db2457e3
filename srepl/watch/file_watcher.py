"""File system watcher feeding change events to the watch session."""
import os
from pathlib import Path
from typing import Iterable, Optional, Set

from PyQt6.QtCore import QObject, pyqtSignal, QFileSystemWatcher

from srepl.logging import get_logger

logger = get_logger(__name__)

# Directory names never descended into
SKIPPED_DIRS = {'__pycache__', 'node_modules'}


class DirectoryWatcher(QObject):
    """Watch a directory tree and emit a signal for every changed file.

    Existing files emit on modification. Files that appear later (new
    files, or files replaced by an editor's atomic save) emit once when
    their directory changes, and are watched from then on.
    """

    path_changed = pyqtSignal(str)  # Emits absolute filepath

    def __init__(
        self,
        root,
        suffixes: Optional[Iterable[str]] = None,
        ignore: Iterable = (),
        parent: Optional[QObject] = None,
    ):
        super().__init__(parent)
        self._root = Path(root).resolve()
        self._suffixes = set(suffixes) if suffixes is not None else None
        self._ignore = {os.path.realpath(str(p)) for p in ignore}
        self._watcher = QFileSystemWatcher(self)
        self._files: Set[str] = set()
        self._dirs: Set[str] = set()
        self._watcher.fileChanged.connect(self._on_file_changed)
        self._watcher.directoryChanged.connect(self._on_directory_changed)

    @property
    def root(self) -> Path:
        return self._root

    def watched_files(self) -> Set[str]:
        return set(self._files)

    def start(self) -> None:
        """Start watching every relevant file under the root."""
        self._scan(str(self._root), emit=False)
        logger.debug(f"Watching {len(self._files)} file(s) in {len(self._dirs)} dir(s) under {self._root}")

    def stop(self) -> None:
        """Stop watching everything."""
        paths = list(self._files | self._dirs)
        if paths:
            self._watcher.removePaths(paths)
        self._files.clear()
        self._dirs.clear()

    def _wants_dir(self, name: str) -> bool:
        return not name.startswith('.') and name not in SKIPPED_DIRS

    def _wants_file(self, path: str) -> bool:
        if os.path.realpath(path) in self._ignore:
            return False
        if self._suffixes is None:
            return True
        return os.path.splitext(path)[1] in self._suffixes

    def _scan(self, directory: str, emit: bool) -> None:
        """Add a directory and everything relevant beneath it."""
        if directory not in self._dirs:
            self._watcher.addPath(directory)
            self._dirs.add(directory)

        try:
            entries = list(os.scandir(directory))
        except OSError as e:
            logger.warning(f"Cannot list {directory}: {e}")
            return

        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                if self._wants_dir(entry.name) and entry.path not in self._dirs:
                    self._scan(entry.path, emit)
            elif entry.is_file() and entry.path not in self._files and self._wants_file(entry.path):
                self._watcher.addPath(entry.path)
                self._files.add(entry.path)
                if emit:
                    self.path_changed.emit(entry.path)

    def _on_file_changed(self, filepath: str) -> None:
        """Handle file change notification."""
        # QFileSystemWatcher may remove the path after change (depending on OS)
        # Re-add it to keep watching
        if os.path.exists(filepath):
            if filepath not in self._watcher.files():
                self._watcher.addPath(filepath)
        else:
            self._files.discard(filepath)
        self.path_changed.emit(filepath)

    def _on_directory_changed(self, directory: str) -> None:
        """Pick up files and directories created since the last scan."""
        if not os.path.isdir(directory):
            self._dirs.discard(directory)
            return
        self._files = {f for f in self._files if os.path.exists(f)}
        self._scan(directory, emit=True)
