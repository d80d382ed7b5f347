"""
kernelhub CLI — run code in a fresh kernel and stream its output.

    python -m kernelhub -c "print('hello')"
    python -m kernelhub --mode isolated-worker script.py
    echo "1 + 1" | python -m kernelhub
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from kernelhub.core.logging import setup_logging
from kernelhub.kernel.contracts import EventType, KernelMode
from kernelhub.kernel.errors import KernelHubError
from kernelhub.kernel.manager import KernelManager

logger = logging.getLogger("kernelhub.cli")


def _render(event, as_json: bool) -> None:
    if as_json:
        print(json.dumps(event.to_dict()), flush=True)
        return
    if event.type == EventType.STREAM.value:
        stream = sys.stdout if event.data.get("name") == "stdout" else sys.stderr
        stream.write(event.data.get("text", ""))
        stream.flush()
    elif event.type == EventType.EXECUTE_RESULT.value:
        print(event.data.get("data", {}).get("text/plain", ""), flush=True)
    elif event.type in (EventType.DISPLAY_DATA.value, EventType.UPDATE_DISPLAY_DATA.value):
        print(event.data.get("data", {}).get("text/plain", ""), flush=True)
    elif event.type == EventType.EXECUTE_ERROR.value:
        traceback = event.data.get("traceback") or [
            f"{event.data.get('ename')}: {event.data.get('evalue')}"
        ]
        print("\n".join(traceback), file=sys.stderr, flush=True)


async def run(code: str, mode: KernelMode, language: str, as_json: bool) -> int:
    """Create one kernel, stream the code's events, return an exit status."""
    failed = False
    async with KernelManager() as manager:
        kernel_id = await manager.create_kernel(mode=mode, language=language)
        async for event in manager.execute_stream(kernel_id, code):
            failed = failed or event.is_error
            _render(event, as_json)
    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="kernelhub", description="Run code in a kernelhub kernel"
    )
    parser.add_argument("-c", "--code", help="Code to run (default: file or stdin)")
    parser.add_argument("file", nargs="?", help="Source file to run")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in KernelMode],
        default=KernelMode.IN_PROCESS.value,
        help="Kernel mode",
    )
    parser.add_argument("--language", default="python", help="Kernel language")
    parser.add_argument("--json", action="store_true", help="Print raw events as JSON lines")
    args = parser.parse_args(argv)

    setup_logging()

    if args.code is not None:
        code = args.code
    elif args.file:
        with open(args.file, encoding="utf-8") as f:
            code = f.read()
    else:
        code = sys.stdin.read()

    try:
        return asyncio.run(run(code, KernelMode(args.mode), args.language, args.json))
    except KernelHubError as e:
        logger.error("%s", e)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
