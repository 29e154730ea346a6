from __future__ import annotations

import argparse
import asyncio

from signflow.core.logging import configure_logging
from signflow.workers.reminder_worker import run_reminder_loop, run_reminder_tick


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the signature reminder and expiration scheduler")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--interval", type=int, default=None, help="Override REMINDER_INTERVAL_S")
    return parser


async def _main(args: argparse.Namespace) -> None:
    # Dedicated process so reminders and expirations fire without request traffic.
    configure_logging()
    if args.once:
        summary = await run_reminder_tick()
        print(summary)
        return
    await run_reminder_loop(interval_s=args.interval)


if __name__ == "__main__":
    try:
        asyncio.run(_main(_build_parser().parse_args()))
    except KeyboardInterrupt:
        pass
