"""
The watch session: one synchronization cycle per file change event.

A cycle moves through

    IDLE → RESOLVING → EXECUTING → READING_LOG → MAPPING → REWRITING → PERSISTING → IDLE

and may drop back to IDLE from any stage when there is nothing to do.
Events are handled strictly one at a time, which is what keeps the
debounce records and mapping links consistent without locking.
"""

import os
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from srepl.core import rewrite
from srepl.core.capture import LOG_PATH_ENV
from srepl.core.errors import ExecutionError, MapperConfigError, SourceMapError
from srepl.core.log_entry import LogEntry
from srepl.core.log_protocol import read_log
from srepl.core.position_mapper import BuildConfigMapper, PositionMapper
from srepl.core.runner import DEFAULT_ENTRY, run_module
from srepl.core.settings import SETTING_KEYS, load_settings
from srepl.logging import get_logger
from srepl.state_tracer import CycleState, CycleTracer, get_tracer

logger = get_logger(__name__)

DEFAULT_LOG_PATH = Path(tempfile.gettempdir()) / 'srepl.txt'
DEFAULT_DEBOUNCE_MS = 300

# Authored sources that an external build step compiles to executable modules
DEFAULT_SOURCE_SUFFIXES = ('.coco',)
DEFAULT_EXECUTABLE_SUFFIXES = ('.py',)


@dataclass(frozen=True)
class SessionConfig:
    """Everything a watch session needs to know up front."""
    root: Path
    log_path: Path = DEFAULT_LOG_PATH
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    entry: str = DEFAULT_ENTRY
    python: Optional[str] = None
    source_suffixes: Tuple[str, ...] = DEFAULT_SOURCE_SUFFIXES
    executable_suffixes: Tuple[str, ...] = DEFAULT_EXECUTABLE_SUFFIXES

    @classmethod
    def from_settings(cls, root, settings: Optional[dict] = None, **overrides) -> 'SessionConfig':
        """
        Build a config from stored settings, the environment and overrides.

        Precedence, lowest first: defaults, settings file, SREPL_LOG_PATH,
        explicit overrides (None values are ignored).
        """
        if settings is None:
            settings = load_settings()
        values = {k: settings[k] for k in SETTING_KEYS if k in settings}
        if os.environ.get(LOG_PATH_ENV):
            values['log_path'] = os.environ[LOG_PATH_ENV]
        values.update({k: v for k, v in overrides.items() if v is not None})

        if 'log_path' in values:
            values['log_path'] = Path(values['log_path']).expanduser().resolve()
        if 'debounce_ms' in values:
            values['debounce_ms'] = int(values['debounce_ms'])
        for key in ('source_suffixes', 'executable_suffixes'):
            if key in values:
                values[key] = tuple(values[key])
        return cls(root=Path(root).resolve(), **values)


@dataclass(frozen=True)
class MappingLink:
    """Single-use token: the next event on a derived artifact belongs to source_path."""
    source_path: Path
    map_path: Path


@dataclass(frozen=True)
class CycleOutcome:
    """How a cycle ended: the state it left from and why."""
    state: CycleState
    reason: str
    written: Optional[Path] = None


def read_source(path: Path) -> str:
    """Read a file keeping its line breaks exactly as they are."""
    with open(path, 'r', encoding='utf-8', newline='') as f:
        return f.read()


def write_source(path: Path, content: str) -> None:
    with open(path, 'w', encoding='utf-8', newline='') as f:
        f.write(content)


def _same_file(a, b: Path) -> bool:
    return os.path.realpath(a) == os.path.realpath(b)


class WatchSession:
    """
    Turns file change events into annotation rewrites.

    Lifecycle:
    1. handle_event() for every change event, in arrival order
    2. request_stop() once cancellation is requested
    3. rollback() to strip every annotation this session wrote
    """

    def __init__(
        self,
        config: SessionConfig,
        mapper_factory: Callable[[Path], PositionMapper] = BuildConfigMapper.from_root,
        runner: Callable[..., object] = run_module,
        clock: Callable[[], float] = time.monotonic,
        tracer: Optional[CycleTracer] = None,
    ):
        self.config = config
        self._mapper_factory = mapper_factory
        self._runner = runner
        self._clock = clock
        self._tracer = tracer or get_tracer()

        self._last_writes: Dict[Path, float] = {}
        self._links: Dict[Path, MappingLink] = {}
        self._touched: Set[Path] = set()
        self._stopped = False

        self._mapper: Optional[PositionMapper] = None
        self._mapper_error: Optional[MapperConfigError] = None
        self._mapper_built = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def touched_paths(self) -> Set[Path]:
        return set(self._touched)

    @property
    def mapper_error(self) -> Optional[MapperConfigError]:
        return self._mapper_error

    @property
    def debounced_paths(self) -> Set[Path]:
        """Artifacts whose next change event may still be srepl's own write."""
        return set(self._last_writes)

    def pending_link(self, artifact_path) -> Optional[MappingLink]:
        return self._links.get(Path(artifact_path).resolve())

    def request_stop(self) -> None:
        """Refuse every event from now on. The current cycle is not interrupted."""
        self._stopped = True

    # === Cycle ===

    def _advance(self, path: Path, before: CycleState, after: CycleState) -> CycleState:
        self._tracer.trace_transition(str(path), before, after)
        return after

    def _exit(self, path: Path, state: CycleState, reason: str, written: Optional[Path] = None) -> CycleOutcome:
        logger.debug(f"{path}: {state.value} -> IDLE ({reason})")
        if state is not CycleState.IDLE:
            self._tracer.trace_transition(str(path), state, CycleState.IDLE, reason)
        return CycleOutcome(state=state, reason=reason, written=written)

    def _get_mapper(self) -> Optional[PositionMapper]:
        """Build the mapper on first use; a failure is remembered until restart."""
        if not self._mapper_built:
            self._mapper_built = True
            try:
                self._mapper = self._mapper_factory(self.config.root)
            except MapperConfigError as e:
                self._mapper_error = e
                logger.warning(f"position mapping disabled: {e}")
        return self._mapper

    def _is_debounced(self, artifact: Path) -> bool:
        last = self._last_writes.pop(artifact, None)
        if last is None:
            return False
        return (self._clock() - last) * 1000.0 < self.config.debounce_ms

    def _expire_debounce(self) -> None:
        """Forget writes older than the window, whether or not their path fired again."""
        now = self._clock()
        expired = [
            artifact for artifact, last in self._last_writes.items()
            if (now - last) * 1000.0 >= self.config.debounce_ms
        ]
        for artifact in expired:
            del self._last_writes[artifact]

    def _clear_log(self) -> None:
        try:
            os.unlink(self.config.log_path)
        except FileNotFoundError:
            pass

    def handle_event(self, path) -> CycleOutcome:
        """Run one synchronization cycle for a changed path."""
        event_path = Path(path).resolve()
        self._expire_debounce()
        if self._stopped:
            return self._exit(event_path, CycleState.IDLE, 'stopped')
        if _same_file(event_path, self.config.log_path):
            return self._exit(event_path, CycleState.IDLE, 'log file')

        state = self._advance(event_path, CycleState.IDLE, CycleState.RESOLVING)

        link = self._links.pop(event_path, None)
        if link is not None:
            source_path, artifact, map_path = link.source_path, event_path, link.map_path
        else:
            source_path, artifact, map_path = event_path, event_path, None

        if source_path.suffix in self.config.source_suffixes and link is None:
            mapper = self._get_mapper()
            if mapper is None:
                return self._exit(event_path, state, 'no position mapper')
            paths = mapper.artifact_for(source_path)
            if paths is None:
                return self._exit(event_path, state, 'outside source root')
            self._links[paths.artifact_path.resolve()] = MappingLink(source_path, paths.map_path)
            # The artifact's own change event runs the cycle
            return self._exit(event_path, state, f'awaiting {paths.artifact_path.name}')

        if artifact.suffix not in self.config.executable_suffixes:
            return self._exit(event_path, state, 'not executable')
        if self._is_debounced(artifact):
            return self._exit(event_path, state, 'own write')
        if not artifact.is_file():
            return self._exit(event_path, state, 'missing')

        state = self._advance(event_path, state, CycleState.EXECUTING)
        self._clear_log()
        try:
            self._runner(
                artifact,
                self.config.log_path,
                python=self.config.python,
                entry=self.config.entry,
            )
        except ExecutionError as e:
            # A broken save is normal while editing
            logger.warning(f"{artifact} failed with status {e.returncode}")
            logger.debug(e.stderr)
            return self._exit(event_path, state, 'execution failed')
        except OSError as e:
            logger.warning(f"Could not run {artifact}: {e}")
            return self._exit(event_path, state, 'execution failed')

        state = self._advance(event_path, state, CycleState.READING_LOG)
        try:
            entries = read_log(self.config.log_path, str(self.config.log_path.parent))
        except OSError:
            return self._exit(event_path, state, 'no log')
        # Stale entries from another artifact are dropped
        entries = [e for e in entries if _same_file(e.file_path, artifact)]
        if not entries:
            return self._exit(event_path, state, 'no entries')

        state = self._advance(event_path, state, CycleState.MAPPING)
        if map_path is not None:
            try:
                entries = self._map_entries(entries, source_path, map_path)
            except SourceMapError as e:
                logger.warning(str(e))
                return self._exit(event_path, state, 'source map unreadable')

        state = self._advance(event_path, state, CycleState.REWRITING)
        style = rewrite.style_for_path(source_path)
        try:
            content = read_source(source_path)
        except OSError as e:
            logger.warning(f"Could not read {source_path}: {e}")
            return self._exit(event_path, state, 'source unreadable')
        new_content = rewrite.apply(rewrite.strip_trailing(content, style), entries, style)
        if new_content == content:
            self._clear_log()
            return self._exit(event_path, state, 'unchanged')

        state = self._advance(event_path, state, CycleState.PERSISTING)
        self._last_writes[artifact] = self._clock()
        self._touched.add(source_path)
        with ThreadPoolExecutor(max_workers=2) as pool:
            write = pool.submit(write_source, source_path, new_content)
            clear = pool.submit(self._clear_log)
            clear.result()
            try:
                write.result()
            except OSError as e:
                logger.warning(f"Could not write {source_path}: {e}")
                return self._exit(event_path, state, 'write failed')

        logger.info(f"Annotated {source_path} ({len(entries)} value(s))")
        return self._exit(event_path, state, 'written', written=source_path)

    def _map_entries(self, entries: List[LogEntry], source_path: Path, map_path: Path) -> List[LogEntry]:
        """Move artifact-space entries into source space, dropping unmappable ones."""
        mapper = self._get_mapper()
        if mapper is None:
            return []
        mapped = []
        for entry in entries:
            location = entry.location
            if location is None:
                continue
            original = mapper.resolve(map_path, location, source_path)
            if original is None:
                continue
            mapped.append(entry.moved_to(str(source_path), original))
        return mapped

    # === Termination ===

    def _restore(self, path: Path) -> bool:
        try:
            content = read_source(path)
        except OSError as e:
            logger.warning(f"Skipping rollback of {path}: {e}")
            return False
        stripped = rewrite.strip(content, rewrite.style_for_path(path))
        if stripped != content:
            try:
                write_source(path, stripped)
            except OSError as e:
                logger.warning(f"Could not roll back {path}: {e}")
                return False
        return True

    def rollback(self) -> List[Path]:
        """
        Strip every annotation from every file this session wrote.

        Best effort: a file that is gone or fails to read or write is
        skipped without affecting the others.

        Returns:
            The paths that were restored
        """
        paths = sorted(self._touched)
        restored: List[Path] = []
        if paths:
            with ThreadPoolExecutor(max_workers=min(8, len(paths))) as pool:
                results = list(pool.map(self._restore, paths))
            restored = [p for p, ok in zip(paths, results) if ok]
        self._clear_log()
        logger.info(f"Rolled back {len(restored)} of {len(paths)} file(s)")
        self._tracer.trace_rollback(str(p) for p in restored)
        return restored
