"""Local stand-in for the stream-json agent CLI, used by tests and smoke checks."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

EMPTY_FINDINGS_REPLY = '{"issues": [], "usecases": [], "duplicatesToDelete": []}'


def main(argv: list[str] | None = None) -> int:
    """Replay a scripted event stream, or answer every prompt with empty findings."""

    parser = argparse.ArgumentParser(prog="echo-agent")
    parser.add_argument("-p", "--print", dest="prompt", default="")
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--model", default=None)
    parser.add_argument("--max-turns", type=int, default=None)
    parser.add_argument("--add-dir", action="append", default=[])
    parser.add_argument("--script", default=None, help="File whose lines are written verbatim.")
    parser.add_argument("--reply", default=EMPTY_FINDINGS_REPLY)
    parser.add_argument("--delay", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    args = parser.parse_args(argv)

    if args.script:
        lines = Path(args.script).read_text("utf-8").splitlines()
    else:
        lines = _default_lines(prompt=args.prompt, reply=args.reply, model=args.model)

    for line in lines:
        sys.stdout.write(line + "\n")
        sys.stdout.flush()
        if args.delay:
            time.sleep(args.delay)
    return args.exit_code


def _default_lines(*, prompt: str, reply: str, model: str | None) -> list[str]:
    events = [
        {"type": "system", "subtype": "init", "model": model or "echo"},
        {
            "type": "assistant",
            "message": {
                "content": [{"type": "text", "text": f"Received prompt ({len(prompt)} chars)."}],
            },
        },
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": reply,
            "total_cost_usd": 0.0,
        },
    ]
    return [json.dumps(event) for event in events]


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
