"""Entry point: python -m memoranda [serve|doctor]

- "serve":  MCP server on stdio (default)
- "doctor": Check the repository and memo files, exit 1 on failures
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

from memoranda.config import load_config


def _setup_logging(level: str, log_file: Path | None = None) -> None:
    # stdout carries the protocol; logs go to stderr or a file
    kwargs = {"filename": str(log_file)} if log_file else {"stream": sys.stderr}
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        **kwargs,
    )


def _run_serve() -> None:
    """MCP server mode."""
    config = load_config()
    _setup_logging(config.log_level, config.log_file)

    from memoranda import server
    from memoranda.memo.store import MemoStore

    async def _main() -> None:
        store = await MemoStore.open(config=config)
        await server.run(store)

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        pass


def _run_doctor() -> None:
    config = load_config()
    _setup_logging("WARNING", config.log_file)

    from memoranda.doctor import run_doctor

    failures = run_doctor(config=config)
    sys.exit(1 if failures else 0)


def main() -> None:
    cmd = sys.argv[1] if len(sys.argv) > 1 else "serve"

    if cmd == "serve":
        _run_serve()
    elif cmd == "doctor":
        _run_doctor()
    else:
        print("Usage: memoranda [serve|doctor]")
        print("  serve   MCP server on stdio (default)")
        print("  doctor  Check repository and memo files")
        sys.exit(1)


if __name__ == "__main__":
    main()
