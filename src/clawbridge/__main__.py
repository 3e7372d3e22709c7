"""Entry point for `python -m clawbridge` / `clawbridge`.

Subcommands:
    clawbridge          Run the supervisor, which runs the worker (default)
    clawbridge worker   Run the worker directly, without restart or rollback
"""

from __future__ import annotations

import argparse
import asyncio
import sys


def _supervise() -> None:
    from clawbridge.supervisor import Supervisor

    sys.exit(asyncio.run(Supervisor().run()))


def _worker() -> None:
    from clawbridge.app import BridgeApp

    async def _main() -> None:
        await BridgeApp().run()

    asyncio.run(_main())


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="clawbridge",
        description="Chat-to-agent bridge with a self-healing supervisor",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("worker", help="Run the bridge worker without the supervisor")

    args = parser.parse_args()

    match args.command:
        case "worker":
            _worker()
        case _:
            _supervise()


if __name__ == "__main__":
    main()
