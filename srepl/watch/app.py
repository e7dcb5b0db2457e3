"""
Headless Qt event loop driving a watch session.

Qt delivers watcher signals on the main thread one at a time, so cycles
never overlap. SIGINT/SIGTERM request a stop: the running cycle finishes,
the loop exits, and every annotation written during the session is rolled
back before returning.
"""

import signal
import sys
from typing import List, Optional

from PyQt6.QtCore import QCoreApplication, QTimer

from srepl.logging import get_logger
from srepl.state_tracer import CycleTracer, get_tracer
from .file_watcher import DirectoryWatcher
from .session import SessionConfig, WatchSession

logger = get_logger(__name__)

# How often Qt hands control back so Python can run signal handlers
SIGNAL_POLL_MS = 200

EXIT_OK = 0
EXIT_FAULT = 1


def run_watch(
    config: SessionConfig,
    session: Optional[WatchSession] = None,
    tracer: Optional[CycleTracer] = None,
) -> int:
    """
    Watch config.root until cancelled.

    Returns:
        0 on clean shutdown (including cancellation), 1 on an
        unrecoverable fault
    """
    if not config.root.is_dir():
        logger.error(f"{config.root} is not a directory")
        return EXIT_FAULT

    tracer = tracer or get_tracer()
    session = session or WatchSession(config, tracer=tracer)
    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])

    watcher = DirectoryWatcher(
        config.root,
        suffixes=config.executable_suffixes + config.source_suffixes,
        ignore=[config.log_path],
    )
    faults: List[BaseException] = []

    def on_path_changed(path: str) -> None:
        if session.stopped:
            return
        try:
            session.handle_event(path)
        except Exception as e:
            logger.exception(f"Unrecoverable error while handling {path}")
            tracer.trace_error(path, repr(e))
            faults.append(e)
            session.request_stop()
            app.quit()

    def on_signal(signum, frame) -> None:
        logger.info(f"Received signal {signum}, stopping")
        session.request_stop()
        app.quit()

    watcher.path_changed.connect(on_path_changed)
    previous = {
        sig: signal.signal(sig, on_signal)
        for sig in (signal.SIGINT, signal.SIGTERM)
    }

    # Let the interpreter run signal handlers while Qt's loop is blocking
    timer = QTimer()
    timer.timeout.connect(lambda: None)
    timer.start(SIGNAL_POLL_MS)

    watcher.start()
    tracer.trace_session_started(str(config.root))
    logger.info(f"Watching {config.root} (Ctrl+C to stop)")

    try:
        app.exec()
    finally:
        timer.stop()
        watcher.stop()
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if faults:
        logger.error(f"Stopped after a fault: {faults[0]!r}")
        tracer.trace_session_stopped(f"fault: {faults[0]!r}")
        return EXIT_FAULT

    restored = session.rollback()
    logger.info(f"Session ended, restored {len(restored)} file(s)")
    tracer.trace_session_stopped("cancelled")
    return EXIT_OK
