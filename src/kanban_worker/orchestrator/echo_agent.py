"""Local deterministic agent for runner and CLI integration tests."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Print scripted agent output and exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt", default="")
    parser.add_argument("--file", action="append", default=[], dest="files")
    parser.add_argument("--say", action="append", default=[])
    parser.add_argument("--stderr", action="append", default=[])
    parser.add_argument("--exit-signal", action="store_true")
    parser.add_argument("--indicators", type=int, default=0)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    print(f"echo_agent task={os.getenv('KANBAN_TASK_ID', '')} loop={os.getenv('KANBAN_LOOP_NUMBER', '')}")
    if args.prompt:
        print(args.prompt.splitlines()[0])
    for path in args.files:
        print(f"modified: {path}")
    for line in args.say:
        print(line)
    for line in args.stderr:
        print(line, file=sys.stderr)
    sys.stdout.flush()

    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.exit_signal or args.indicators:
        status = {"EXIT_SIGNAL": args.exit_signal, "COMPLETION_INDICATORS": args.indicators}
        print(f"RALPH_STATUS: {json.dumps(status)}")
    return args.exit_code


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
