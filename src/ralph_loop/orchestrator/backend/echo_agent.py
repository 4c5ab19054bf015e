"""Local deterministic agent for CLI backend and runner integration tests.

Prints a ``claude -p --output-format json`` style result object.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
import uuid
from pathlib import Path

from ralph_loop.orchestrator.backend.base import COMPLETION_SIGNAL


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back with synthetic usage."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--cost", type=float, default=0.01)
    parser.add_argument("--complete", action="store_true")
    parser.add_argument("--fail", action="store_true")
    parser.add_argument("--error-result", action="store_true")
    parser.add_argument("--no-cost", action="store_true")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--resume", default=None)
    args = parser.parse_args(argv)

    if args.sleep:
        time.sleep(args.sleep)
    if args.fail:
        print("echo agent failure requested", file=sys.stderr)
        return 1

    prompt = Path(args.prompt_file).read_text("utf-8")
    text = f"Processed {len(prompt.split())} words."
    if args.complete:
        text = f"{text} {COMPLETION_SIGNAL}"

    payload: dict[str, object] = {
        "type": "result",
        "subtype": "error_during_execution" if args.error_result else "success",
        "is_error": args.error_result,
        "result": text,
        "session_id": args.resume or str(uuid.uuid4()),
        "usage": {
            "input_tokens": len(prompt),
            "output_tokens": len(text),
            "cache_read_input_tokens": 0,
        },
    }
    if not args.no_cost:
        payload["total_cost_usd"] = args.cost
    print(json.dumps(payload))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
