"""
Runs a probed module in a fresh interpreter.

Each synchronization cycle gets its own subprocess, so every run starts from
a clean slate: no module cache to invalidate, no state left over from the
previous save. The child enables capture, imports the module from its file
path, calls its entry function and exits.

Child usage:
    python -m srepl.core.runner --log-path /tmp/srepl.txt [--entry pr] module.py
"""

import argparse
import asyncio
import importlib.util
import inspect
import os
import subprocess
import sys
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import capture
from .errors import ExecutionError
from srepl.logging import get_logger, setup_logging

logger = get_logger(__name__)

DEFAULT_ENTRY = 'pr'

# Name the module is imported under in the child
MODULE_NAME = '__srepl_main__'


@dataclass(frozen=True)
class RunResult:
    """Outcome of one module run."""
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_module(
    artifact_path,
    log_path,
    *,
    python: Optional[str] = None,
    entry: str = DEFAULT_ENTRY,
    cwd=None,
) -> RunResult:
    """
    Execute a module with capture enabled and wait for it to finish.

    Args:
        artifact_path: The executable module (.py)
        log_path: Log file probe calls append to
        python: Interpreter to use (defaults to the current one)
        entry: Entry function called after import, if the module defines it
        cwd: Working directory for the child (defaults to the module's dir)

    Returns:
        RunResult of the child process

    Raises:
        ExecutionError: if the child exits with a non-zero status
    """
    artifact = Path(artifact_path)
    cmd = [
        python or sys.executable,
        '-m', 'srepl.core.runner',
        '--log-path', str(log_path),
        '--entry', entry,
        str(artifact),
    ]
    env = dict(os.environ)
    env[capture.LOG_PATH_ENV] = str(log_path)

    logger.debug(f"Running {artifact} ({' '.join(cmd)})")
    proc = subprocess.run(
        cmd,
        cwd=str(cwd or artifact.parent),
        env=env,
        capture_output=True,
        text=True,
    )
    result = RunResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
    if not result.ok:
        raise ExecutionError(artifact, result.returncode, result.stderr)
    return result


def _load_module(path: Path):
    spec = importlib.util.spec_from_file_location(MODULE_NAME, str(path))
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[MODULE_NAME] = module
    spec.loader.exec_module(module)
    return module


def _call_entry(module, entry: str) -> None:
    func = getattr(module, entry, None)
    if not callable(func):
        return
    result = func()
    if inspect.isawaitable(result):
        asyncio.run(_wait(result))


async def _wait(awaitable):
    return await awaitable


def execute(path, log_path, entry: str = DEFAULT_ENTRY) -> None:
    """Import the module at path and run its entry function, capturing probes."""
    path = Path(path).resolve()
    module_dir = str(path.parent)
    if module_dir not in sys.path:
        sys.path.insert(0, module_dir)

    capture.enable(log_path)
    try:
        module = _load_module(path)
        _call_entry(module, entry)
    finally:
        capture.disable()


def main(argv=None) -> int:
    """Child process entry point."""
    parser = argparse.ArgumentParser(prog='srepl.core.runner')
    parser.add_argument('--log-path', default=os.environ.get(capture.LOG_PATH_ENV))
    parser.add_argument('--entry', default=DEFAULT_ENTRY)
    parser.add_argument('module', help='Path to the module to run')
    args = parser.parse_args(argv)

    if not args.log_path:
        logger.error('--log-path is required')
        return 2

    try:
        execute(args.module, args.log_path, entry=args.entry)
    except SystemExit as e:
        if e.code is None:
            return 0
        return e.code if isinstance(e.code, int) else 1
    except BaseException:
        traceback.print_exc()
        return 1
    return 0


if __name__ == '__main__':
    # Warnings from p() reach the watcher through the child's stderr
    setup_logging()
    sys.exit(main())
