"""Shared test fixtures for the srepl test suite.

Provides a session-wide QCoreApplication, a fake module runner and clock
for driving watch sessions without subprocesses, and an environment
fixture that lets real runner subprocesses import srepl.
"""

import logging
import os
import sys
import time
from pathlib import Path

import pytest
from PyQt6.QtCore import QCoreApplication

from srepl.core.capture import LOG_PATH_ENV
from srepl.core.log_entry import LogEntry
from srepl.core.log_protocol import append_entry

REPO_ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def qapp():
    """Session-scoped QCoreApplication shared by all tests."""
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication(sys.argv)
    yield app


@pytest.fixture
def workdir(tmp_path):
    """A resolved temporary directory (tmp_path may sit behind a symlink)."""
    return tmp_path.resolve()


@pytest.fixture
def runner_env(monkeypatch):
    """Make srepl importable from runner subprocesses."""
    existing = os.environ.get("PYTHONPATH")
    paths = [str(REPO_ROOT)] + ([existing] if existing else [])
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(paths))
    monkeypatch.delenv(LOG_PATH_ENV, raising=False)


class FakeRunner:
    """Stands in for run_module: appends scripted entries to the log.

    ``outcomes`` maps an artifact path to either a list of
    ``(file_path, line, column, result)`` tuples or an exception to raise.
    """

    def __init__(self, outcomes=None):
        self.outcomes = dict(outcomes or {})
        self.calls = []

    def __call__(self, artifact, log_path, *, python=None, entry="pr"):
        artifact = Path(artifact)
        self.calls.append(artifact)
        outcome = self.outcomes.get(artifact)
        if isinstance(outcome, BaseException):
            raise outcome
        base_dir = str(Path(log_path).parent)
        for file_path, line, column, result in outcome or []:
            append_entry(log_path, base_dir, LogEntry(
                file_path=str(file_path), line=line, column=column, result=result,
            ))


@pytest.fixture
def fake_runner():
    return FakeRunner()


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wait_for(qapp):
    """Pump the Qt event loop until predicate() is truthy or timeout."""
    def _wait(predicate, timeout=3.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            qapp.processEvents()
            if predicate():
                return True
            time.sleep(0.01)
        return bool(predicate())
    return _wait


@pytest.fixture
def srepl_logger():
    """Restore the 'srepl' logger after a test reconfigures it."""
    logger = logging.getLogger("srepl")
    level, handlers = logger.level, list(logger.handlers)
    yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    for handler in handlers:
        logger.addHandler(handler)
