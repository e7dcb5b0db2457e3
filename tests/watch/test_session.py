"""Tests for WatchSession: one synchronization cycle per change event."""

from pathlib import Path

import pytest

from srepl.core.errors import ExecutionError, MapperConfigError, MapperReason
from srepl.core.log_entry import Location
from srepl.core.position_mapper import ArtifactPaths, PositionMapper
from srepl.state_tracer import CycleState, CycleTracer
from srepl.watch.session import SessionConfig, WatchSession


class FakeMapper(PositionMapper):
    """Compiles root/src/X.coco to root/build/X.py, which has a two-line header."""

    def __init__(self, root: Path):
        self.root = root

    def artifact_for(self, source_path):
        source = Path(source_path)
        if source.parent != self.root / "src":
            return None
        build = self.root / "build"
        return ArtifactPaths(build / f"{source.stem}.py", build / f"{source.stem}.py.map")

    def resolve(self, map_path, location, source_path=None):
        if location.line <= 2:
            return None
        return Location(location.line - 2, location.column)


@pytest.fixture
def config(workdir):
    return SessionConfig(root=workdir, log_path=workdir / "srepl.txt")


@pytest.fixture
def make_session(config, fake_runner, clock):
    def _make(**kwargs):
        kwargs.setdefault("runner", fake_runner)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("mapper_factory", FakeMapper)
        kwargs.setdefault("tracer", CycleTracer(enabled=False))
        return WatchSession(config, **kwargs)
    return _make


def _source(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


def test_cycle_writes_trailing_annotation(workdir, config, make_session, fake_runner) -> None:
    mod = _source(workdir / "mod.py", "x = p(1)\n")
    fake_runner.outcomes[mod] = [(mod, 1, 5, "1")]
    session = make_session()

    outcome = session.handle_event(mod)

    assert outcome.state is CycleState.PERSISTING
    assert outcome.reason == "written"
    assert outcome.written == mod
    assert mod.read_text() == "x = p(1) #=> 1\n"
    assert session.touched_paths == {mod}
    assert not config.log_path.exists()
    assert fake_runner.calls == [mod]


def test_stale_log_is_cleared_before_running(workdir, config, make_session) -> None:
    mod = _source(workdir / "mod.py", "x = p(1)\n")
    config.log_path.write_text("mod.py:1:5 :: 999\n")
    session = make_session()

    outcome = session.handle_event(mod)

    assert outcome.reason == "no log"
    assert mod.read_text() == "x = p(1)\n"


def test_entries_for_other_files_are_ignored(workdir, make_session, fake_runner) -> None:
    mod = _source(workdir / "mod.py", "x = p(1)\n")
    other = _source(workdir / "other.py", "y = p(2)\n")
    fake_runner.outcomes[mod] = [(other, 1, 5, "2"), (mod, 1, 5, "1")]
    session = make_session()

    session.handle_event(mod)

    assert mod.read_text() == "x = p(1) #=> 1\n"
    assert other.read_text() == "y = p(2)\n"
    assert session.touched_paths == {mod}


def test_only_stale_entries_means_no_entries(workdir, make_session, fake_runner) -> None:
    mod = _source(workdir / "mod.py", "x = p(1)\n")
    other = _source(workdir / "other.py", "y = p(2)\n")
    fake_runner.outcomes[mod] = [(other, 1, 5, "2")]

    outcome = make_session().handle_event(mod)

    assert outcome.state is CycleState.READING_LOG
    assert outcome.reason == "no entries"
    assert other.read_text() == "y = p(2)\n"


def test_own_write_is_debounced(workdir, make_session, fake_runner, clock) -> None:
    mod = _source(workdir / "mod.py", "x = p(1)\n")
    fake_runner.outcomes[mod] = [(mod, 1, 5, "1")]
    session = make_session()
    session.handle_event(mod)

    clock.advance(0.1)
    echo = session.handle_event(mod)

    assert echo.reason == "own write"
    assert len(fake_runner.calls) == 1

    # The debounce record is single-use
    clock.advance(0.01)
    again = session.handle_event(mod)

    assert again.reason == "unchanged"
    assert len(fake_runner.calls) == 2


def test_debounce_expires(workdir, make_session, fake_runner, clock) -> None:
    mod = _source(workdir / "mod.py", "x = p(1)\n")
    fake_runner.outcomes[mod] = [(mod, 1, 5, "1")]
    session = make_session()
    session.handle_event(mod)

    clock.advance(1.0)
    fake_runner.outcomes[mod] = [(mod, 1, 5, "2")]
    outcome = session.handle_event(mod)

    assert outcome.reason == "written"
    assert mod.read_text() == "x = p(1) #=> 2\n"


def test_debounce_records_expire_without_a_new_event(workdir, make_session, fake_runner, clock) -> None:
    mod = _source(workdir / "mod.py", "x = p(1)\n")
    other = _source(workdir / "other.py", "y = 2\n")
    fake_runner.outcomes[mod] = [(mod, 1, 5, "1")]
    session = make_session()
    session.handle_event(mod)
    assert session.debounced_paths == {mod}

    clock.advance(1.0)
    session.handle_event(other)

    assert session.debounced_paths == set()


def test_unchanged_content_is_not_written(workdir, config, make_session, fake_runner) -> None:
    mod = _source(workdir / "mod.py", "x = p(1) #=> 1\n")
    fake_runner.outcomes[mod] = [(mod, 1, 5, "1")]
    before = mod.stat().st_mtime_ns
    session = make_session()

    outcome = session.handle_event(mod)

    assert outcome.state is CycleState.REWRITING
    assert outcome.reason == "unchanged"
    assert mod.stat().st_mtime_ns == before
    assert session.touched_paths == set()
    assert not config.log_path.exists()


def test_execution_failure_leaves_file_alone(workdir, make_session, fake_runner) -> None:
    mod = _source(workdir / "mod.py", "x = p(1\n")
    fake_runner.outcomes[mod] = ExecutionError(mod, 1, "SyntaxError")
    session = make_session()

    outcome = session.handle_event(mod)

    assert outcome.state is CycleState.EXECUTING
    assert outcome.reason == "execution failed"
    assert mod.read_text() == "x = p(1\n"

    # The session keeps going after a failed run
    mod.write_text("x = p(1)\n")
    fake_runner.outcomes[mod] = [(mod, 1, 5, "1")]
    assert session.handle_event(mod).reason == "written"


@pytest.mark.parametrize("name, reason", [
    ("notes.txt", "not executable"),
    ("gone.py", "missing"),
])
def test_events_that_do_not_run(workdir, make_session, fake_runner, name, reason) -> None:
    path = workdir / name
    if name.endswith(".txt"):
        path.write_text("p(1)\n")

    outcome = make_session().handle_event(path)

    assert outcome.reason == reason
    assert fake_runner.calls == []


def test_log_file_events_are_ignored(config, make_session, fake_runner) -> None:
    config.log_path.write_text("")

    outcome = make_session().handle_event(config.log_path)

    assert outcome.state is CycleState.IDLE
    assert outcome.reason == "log file"
    assert fake_runner.calls == []


def test_stopped_session_refuses_events(workdir, make_session, fake_runner) -> None:
    mod = _source(workdir / "mod.py", "x = p(1)\n")
    session = make_session()

    session.request_stop()
    outcome = session.handle_event(mod)

    assert session.stopped
    assert outcome.reason == "stopped"
    assert fake_runner.calls == []


def test_source_event_links_to_artifact(workdir, make_session, fake_runner) -> None:
    source = _source(workdir / "src" / "mod.coco", "x = p(1)\ny = p([1,\n  2])\n")
    artifact = _source(workdir / "build" / "mod.py", "# header\n# header\n")
    fake_runner.outcomes[artifact] = [
        (artifact, 3, 5, "1"),
        (artifact, 4, 5, "[1, 2]"),
        (artifact, 1, 1, "'header'"),
        (artifact, 3, None, "'no column'"),
    ]
    session = make_session()

    awaiting = session.handle_event(source)

    assert awaiting.state is CycleState.RESOLVING
    assert awaiting.reason == "awaiting mod.py"
    assert fake_runner.calls == []
    link = session.pending_link(artifact)
    assert link.source_path == source
    assert link.map_path == workdir / "build" / "mod.py.map"

    outcome = session.handle_event(artifact)

    assert outcome.written == source
    assert source.read_text() == "x = p(1) #=> 1\ny = p([1,\n  2]) #=> [1, 2]\n"
    assert artifact.read_text() == "# header\n# header\n"
    # Links are single-use
    assert session.pending_link(artifact) is None


def test_source_outside_source_root(workdir, make_session) -> None:
    source = _source(workdir / "elsewhere" / "mod.coco", "p(1)\n")

    outcome = make_session().handle_event(source)

    assert outcome.reason == "outside source root"


def test_mapper_config_error_is_remembered(workdir, make_session, fake_runner) -> None:
    calls = []

    def failing_factory(root):
        calls.append(root)
        raise MapperConfigError(MapperReason.NO_BUILD_CONFIG)

    source = _source(workdir / "src" / "mod.coco", "p(1)\n")
    session = make_session(mapper_factory=failing_factory)

    first = session.handle_event(source)
    second = session.handle_event(source)

    assert first.reason == second.reason == "no position mapper"
    assert len(calls) == 1
    assert session.mapper_error.reason is MapperReason.NO_BUILD_CONFIG
    assert fake_runner.calls == []


def test_rollback_restores_every_touched_file(workdir, make_session, fake_runner) -> None:
    trailing = _source(workdir / "a.py", "x = p(1)\n")
    block = _source(workdir / "b.py", "def f():\n    p(d)\n")
    fake_runner.outcomes[trailing] = [(trailing, 1, 5, "1")]
    fake_runner.outcomes[block] = [(block, 2, 5, "{'a': 1,\n 'b': 2}")]
    session = make_session()
    session.handle_event(trailing)
    session.handle_event(block)
    assert "##=>" in block.read_text()

    restored = session.rollback()

    assert restored == [trailing, block]
    assert trailing.read_text() == "x = p(1)\n"
    assert block.read_text() == "def f():\n    p(d)\n"


def test_rollback_skips_missing_files(workdir, make_session, fake_runner) -> None:
    kept = _source(workdir / "a.py", "x = p(1)\n")
    gone = _source(workdir / "b.py", "y = p(2)\n")
    fake_runner.outcomes[kept] = [(kept, 1, 5, "1")]
    fake_runner.outcomes[gone] = [(gone, 1, 5, "2")]
    session = make_session()
    session.handle_event(kept)
    session.handle_event(gone)
    gone.unlink()

    restored = session.rollback()

    assert restored == [kept]
    assert kept.read_text() == "x = p(1)\n"


def test_crlf_sources_keep_line_breaks(workdir, make_session, fake_runner) -> None:
    mod = workdir / "mod.py"
    mod.write_bytes(b"x = p(1)\r\ny = 2\r\n")
    fake_runner.outcomes[mod] = [(mod, 1, 5, "1")]
    session = make_session()

    session.handle_event(mod)
    assert mod.read_bytes() == b"x = p(1) #=> 1\r\ny = 2\r\n"

    session.rollback()
    assert mod.read_bytes() == b"x = p(1)\r\ny = 2\r\n"


def test_tracer_sees_every_transition(workdir, make_session, fake_runner) -> None:
    mod = _source(workdir / "mod.py", "x = p(1)\n")
    fake_runner.outcomes[mod] = [(mod, 1, 5, "1")]
    tracer = CycleTracer(enabled=True, log_file=workdir / "trace.log")
    session = make_session(tracer=tracer)

    session.handle_event(mod)

    transitions = [
        (e.before_state, e.after_state)
        for e in tracer.events if e.event_type == "TRANSITION"
    ]
    assert transitions == [
        ("IDLE", "RESOLVING"),
        ("RESOLVING", "EXECUTING"),
        ("EXECUTING", "READING_LOG"),
        ("READING_LOG", "MAPPING"),
        ("MAPPING", "REWRITING"),
        ("REWRITING", "PERSISTING"),
        ("PERSISTING", "IDLE"),
    ]
    assert "Writes: 1" in tracer.get_summary()
    assert "PERSISTING" in (workdir / "trace.log").read_text()


def test_config_from_settings_precedence(workdir, monkeypatch) -> None:
    monkeypatch.delenv("SREPL_LOG_PATH", raising=False)
    settings = {"debounce_ms": "500", "entry": "main", "log_path": str(workdir / "settings.txt")}

    config = SessionConfig.from_settings(workdir, settings=settings, entry=None)

    assert config.root == workdir
    assert config.debounce_ms == 500
    assert config.entry == "main"
    assert config.log_path == workdir / "settings.txt"
    assert config.source_suffixes == (".coco",)

    monkeypatch.setenv("SREPL_LOG_PATH", str(workdir / "env.txt"))
    assert SessionConfig.from_settings(workdir, settings=settings).log_path == workdir / "env.txt"

    overridden = SessionConfig.from_settings(
        workdir, settings=settings, log_path=workdir / "cli.txt", source_suffixes=[".hy"],
    )
    assert overridden.log_path == workdir / "cli.txt"
    assert overridden.source_suffixes == (".hy",)


def test_real_runner_round_trip(workdir, runner_env, clock) -> None:
    mod = _source(workdir / "hello.py", "from srepl import p\n\np(['Hello', 'world'])\n")
    config = SessionConfig(root=workdir, log_path=workdir / "srepl.txt")
    session = WatchSession(config, clock=clock, tracer=CycleTracer(enabled=False))

    outcome = session.handle_event(mod)

    assert outcome.reason == "written"
    assert mod.read_text() == "from srepl import p\n\np(['Hello', 'world']) #=> ['Hello', 'world']\n"

    # The annotated module still runs and yields the same text
    clock.advance(1.0)
    assert session.handle_event(mod).reason == "unchanged"

    session.rollback()
    assert mod.read_text() == "from srepl import p\n\np(['Hello', 'world'])\n"


def test_real_runner_annotates_after_non_ascii_text(workdir, runner_env, clock) -> None:
    mod = workdir / "accents.py"
    mod.write_text('from srepl import p\ns = "éé"; p(1)\n', encoding="utf-8")
    config = SessionConfig(root=workdir, log_path=workdir / "srepl.txt")
    session = WatchSession(config, clock=clock, tracer=CycleTracer(enabled=False))

    outcome = session.handle_event(mod)

    assert outcome.reason == "written"
    assert mod.read_text(encoding="utf-8") == 'from srepl import p\ns = "éé"; p(1) #=> 1\n'
