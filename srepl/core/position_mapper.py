"""
Position mapping between executed artifacts and authored sources.

When a build step compiles an authored source into the module that actually
runs, probe locations are recorded in the artifact's coordinates. A
PositionMapper knows where that build step puts its artifacts and source
maps, and translates artifact locations back to the authored source.

The concrete mapper reads a `[tool.srepl.build]` table from the nearest
pyproject.toml:

    [tool.srepl.build]
    source_roots = ["src"]
    out_dir = "build"
    emit = true
    source_maps = true
    artifact_suffix = ".py"
    map_suffix = ".py.map"

and Source Map v3 files next to the artifacts, read with the sourcemap
library.
"""

import json
import tomllib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import sourcemap

from .errors import MapperConfigError, MapperReason, SourceMapError
from .log_entry import Location
from srepl.logging import get_logger

logger = get_logger(__name__)

CONFIG_FILE = 'pyproject.toml'


@dataclass(frozen=True)
class ArtifactPaths:
    """Where the build step writes the artifact for one authored source."""
    artifact_path: Path
    map_path: Path


class PositionMapper(ABC):
    """Translates executed-artifact locations back to authored sources."""

    @abstractmethod
    def artifact_for(self, source_path) -> Optional[ArtifactPaths]:
        """Return the artifact and source map paths for an authored source,
        or None when the source is outside what the build step compiles."""

    @abstractmethod
    def resolve(self, map_path, location: Location, source_path=None) -> Optional[Location]:
        """Return the authored-source location for an artifact location,
        or None when the map has no position for it in source_path."""


class SourceMap:
    """A parsed Source Map v3 file and the sources it names."""

    def __init__(self, index, sources: List[str], base_dir: Optional[Path] = None):
        self._index = index
        self.sources = sources
        self.base_dir = Path(base_dir) if base_dir is not None else None

    @classmethod
    def from_json(cls, data: dict, base_dir=None) -> 'SourceMap':
        if not isinstance(data, dict) or data.get('version') != 3:
            raise SourceMapError("Not a version 3 source map")
        if not isinstance(data.get('mappings'), str):
            raise SourceMapError("Source map has no mappings")
        data = dict(data)
        data.setdefault('sources', [])
        data.setdefault('names', [])
        try:
            index = sourcemap.loads(json.dumps(data))
        except (ValueError, KeyError, TypeError, NotImplementedError) as e:
            # NotImplementedError: index maps with "sections"
            raise SourceMapError(f"Invalid source map: {e}")
        return cls(index, list(data['sources'] or []), base_dir)

    @classmethod
    def load(cls, path) -> 'SourceMap':
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            raise SourceMapError(f"Cannot read source map {path}: {e}")
        return cls.from_json(data, base_dir=path.parent)

    def _is_source(self, src: str, source_path) -> bool:
        if len(self.sources) <= 1:
            return True
        if self.base_dir is None:
            return Path(src).name == Path(source_path).name
        return (self.base_dir / src).resolve() == Path(source_path).resolve()

    def original_position_for(self, location: Location, source_path=None) -> Optional[Location]:
        """Map a 1-indexed generated location to a 1-indexed original one.

        Uses the last mapping at or before the column on the same line.
        When the map names several sources and source_path is given, a
        mapping into any other source counts as no mapping.
        """
        line = location.line - 1
        column = location.column - 1
        if line < 0 or column < 0:
            return None
        try:
            token = self._index.lookup(line, column)
        except IndexError:
            return None
        if token.dst_line != line or token.src is None:
            return None
        if source_path is not None and not self._is_source(token.src, source_path):
            return None
        return Location(line=token.src_line + 1, column=token.src_col + 1)


def find_build_config(root) -> Optional[Tuple[Path, dict]]:
    """Walk upward from root to the first pyproject.toml with a build table."""
    current = Path(root).resolve()
    for directory in [current, *current.parents]:
        candidate = directory / CONFIG_FILE
        if not candidate.is_file():
            continue
        try:
            with open(candidate, 'rb') as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Ignoring unreadable {candidate}: {e}")
            continue
        table = data.get('tool', {}).get('srepl', {}).get('build')
        if isinstance(table, dict):
            return candidate, table
    return None


class BuildConfigMapper(PositionMapper):
    """Position mapper for a single-source-root build with source maps.

    Expensive to build (reads and validates configuration), cheap to query.
    Build it once per session.
    """

    def __init__(
        self,
        source_root: Path,
        out_dir: Path,
        artifact_suffix: str = '.py',
        map_suffix: str = '.py.map',
    ):
        self.source_root = Path(source_root).resolve()
        self.out_dir = Path(out_dir).resolve()
        self.artifact_suffix = artifact_suffix
        self.map_suffix = map_suffix
        self._maps: Dict[Path, Tuple[int, SourceMap]] = {}

    @classmethod
    def from_root(cls, root) -> 'BuildConfigMapper':
        """Build a mapper from the configuration governing root.

        Raises:
            MapperConfigError: when the configuration is missing or cannot
                back a mapper (see MapperReason)
        """
        found = find_build_config(root)
        if found is None:
            raise MapperConfigError(MapperReason.NO_BUILD_CONFIG)
        config_path, table = found
        base = config_path.parent

        if not table.get('emit', True) or not table.get('out_dir'):
            raise MapperConfigError(MapperReason.EMIT_DISABLED, config_path)
        if not table.get('source_maps', True):
            raise MapperConfigError(MapperReason.SOURCE_MAPS_DISABLED, config_path)

        roots = table.get('source_roots', ['.'])
        if isinstance(roots, str):
            roots = [roots]
        if len(roots) > 1:
            raise MapperConfigError(MapperReason.MULTIPLE_SOURCE_ROOTS, config_path)
        source_root = roots[0] if roots else '.'

        mapper = cls(
            source_root=base / source_root,
            out_dir=base / table['out_dir'],
            artifact_suffix=table.get('artifact_suffix', '.py'),
            map_suffix=table.get('map_suffix', '.py.map'),
        )
        logger.info(f"Position mapping from {config_path}: {mapper.source_root} -> {mapper.out_dir}")
        return mapper

    def artifact_for(self, source_path) -> Optional[ArtifactPaths]:
        source = Path(source_path).resolve()
        try:
            relative = source.relative_to(self.source_root)
        except ValueError:
            return None
        target = self.out_dir / relative
        return ArtifactPaths(
            artifact_path=target.with_suffix(self.artifact_suffix),
            map_path=target.with_suffix(self.map_suffix),
        )

    def _source_map(self, map_path) -> SourceMap:
        path = Path(map_path)
        try:
            mtime = path.stat().st_mtime_ns
        except OSError as e:
            raise SourceMapError(f"Cannot read source map {path}: {e}")
        cached = self._maps.get(path)
        if cached is not None and cached[0] == mtime:
            return cached[1]
        source_map = SourceMap.load(path)
        self._maps[path] = (mtime, source_map)
        return source_map

    def resolve(self, map_path, location: Location, source_path=None) -> Optional[Location]:
        return self._source_map(map_path).original_position_for(location, source_path)
