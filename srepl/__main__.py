"""
srepl entry point.

Usage:
    python -m srepl [root]
    python -m srepl --loglevel DEBUG --log-console src/
    python -m srepl --trace-states
"""

import argparse
import sys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="srepl",
        description="srepl - write probe values next to the calls that produced them, on every save"
    )
    parser.add_argument(
        "root",
        nargs="?",
        default=".",
        help="Directory to watch (default: current directory)"
    )
    parser.add_argument(
        "--debounce-ms",
        type=int,
        default=None,
        help="Ignore changes to a file this long after srepl wrote it (default: 300)"
    )
    parser.add_argument(
        "--entry",
        default=None,
        help="Function called after importing a module, if defined (default: pr)"
    )
    parser.add_argument(
        "--python",
        default=None,
        help="Interpreter used to run probed modules (default: this one)"
    )
    parser.add_argument(
        "--source-suffix",
        action="append",
        dest="source_suffixes",
        help="Suffix of authored sources compiled to .py by a build step (repeatable, default: .coco)"
    )
    parser.add_argument(
        "--log-path",
        default=None,
        help="Probe log file (default: <tempdir>/srepl.txt, or $SREPL_LOG_PATH)"
    )
    parser.add_argument(
        "-l", "--loglevel",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="WARNING",
        help="Set logging level (default: WARNING). DEBUG writes to /tmp/srepl_debug.log"
    )
    parser.add_argument(
        "--logfile",
        default="/tmp/srepl_debug.log",
        help="Log file path (default: /tmp/srepl_debug.log)"
    )
    parser.add_argument(
        "--log-console",
        action="store_true",
        help="Also log to console (stderr)"
    )
    parser.add_argument(
        "--save-settings",
        action="store_true",
        help="Store the given session options as defaults in ~/.config/srepl/settings.json and exit"
    )
    parser.add_argument(
        "--trace-states",
        action="store_true",
        help="Trace every cycle transition to /tmp/srepl_state_trace.log (also: SREPL_TRACE_STATES=1)"
    )
    return parser


def main(argv=None) -> int:
    """Main entry point for srepl."""
    args = build_parser().parse_args(argv)

    # Initialize cycle tracer FIRST if requested
    from .state_tracer import init_tracer, tracing_requested
    if args.trace_states or tracing_requested():
        tracer = init_tracer(enabled=True)
        print(f"Cycle tracing enabled. Log: {tracer.LOG_FILE}", file=sys.stderr)

    from .logging import setup_logging
    setup_logging(
        level=args.loglevel,
        log_file=args.logfile,
        console=args.log_console
    )

    options = {
        "log_path": args.log_path,
        "debounce_ms": args.debounce_ms,
        "entry": args.entry,
        "python": args.python,
        "source_suffixes": args.source_suffixes,
    }

    if args.save_settings:
        from .core.settings import save_settings
        path = save_settings(options)
        print(f"Saved defaults to {path}")
        return 0

    # Import here to avoid slow startup for --help
    from .watch.app import run_watch
    from .watch.session import SessionConfig

    config = SessionConfig.from_settings(args.root, **options)
    return run_watch(config)


if __name__ == "__main__":
    sys.exit(main())
