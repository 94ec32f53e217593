from __future__ import annotations

import argparse
import asyncio
import sys

from resourcesql.core.logging import configure_logging
from resourcesql.persistence.store import ResourceStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Publish a payload on the resource notification channel")
    parser.add_argument("payload", help="Payload string delivered to listeners")
    return parser


async def _notify(args: argparse.Namespace) -> int:
    store = await ResourceStore.from_settings()
    async with store:
        await store.notify(args.payload)
        print(f"notified channel {store.notify_channel}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_notify(args))
    except Exception as exc:  # noqa: BLE001 - surface notify failures clearly
        print(f"notify failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
