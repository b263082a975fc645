"""Local demo agent for CLI runner integration tests."""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back with optional routing directive and usage markers."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--role", default=os.getenv("AGENT_PIPELINE_ROLE", "agent"))
    parser.add_argument("--prompt", default=None)
    parser.add_argument("--prompt-file", default=None)
    parser.add_argument("--next", dest="next_role", default=None)
    parser.add_argument("--reason", default="echo agent")
    parser.add_argument("--fail-with", default=None)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--tokens", type=int, default=0)
    parser.add_argument("--write-file", default=None)
    args, _ = parser.parse_known_args(argv)

    if args.prompt is not None:
        prompt = args.prompt
    elif args.prompt_file:
        prompt = Path(args.prompt_file).read_text("utf-8")
    else:
        parser.error("Either --prompt or --prompt-file is required")

    if args.sleep > 0:
        time.sleep(args.sleep)

    if args.fail_with:
        print(args.fail_with, file=sys.stderr)
        return 1

    if args.write_file:
        with Path(args.write_file).open("a", encoding="utf-8") as handle:
            handle.write(f"{args.role}\n")

    first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
    print(f"[{args.role}] {first_line}")
    if args.tokens:
        print(f"input_tokens: {args.tokens}")
        print(f"output_tokens: {args.tokens // 2}")
    if args.next_role:
        print(f"NEXT: {args.next_role}")
        print(f"REASON: {args.reason}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
