#!/usr/bin/env python3
"""Rebalance ledger admin tool.

Usage:
    python scripts/admin.py status
    python scripts/admin.py pause | unpause
    python scripts/admin.py list [--routes config/routes.json]
    python scripts/admin.py clear --yes
"""

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

from rebalancer.config import get_settings, load_rebalance_config
from rebalancer.errors import ConfigurationError
from rebalancer.ledger.database import close_redis, get_redis
from rebalancer.ledger.store import RebalanceLedger

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def show_status(ledger: RebalanceLedger) -> None:
    paused = await ledger.is_paused()
    print(f"Rebalancing: {'PAUSED' if paused else 'active'}")


async def list_transfers(ledger: RebalanceLedger, routes_file: str) -> None:
    config = load_rebalance_config(routes_file)
    records = await ledger.get_rebalances(config.routes)
    if not records:
        print("No in-flight transfers")
        return

    for record in records:
        withdraw_id = await ledger.get_withdraw_id(record.id)
        row = record.model_dump(mode="json")
        if withdraw_id:
            row["withdraw_id"] = withdraw_id
        print(json.dumps(row))
    print(f"{len(records)} in-flight transfer(s)")


async def run(args: argparse.Namespace) -> int:
    ledger = RebalanceLedger(get_redis())
    try:
        if args.command == "status":
            await show_status(ledger)
        elif args.command == "pause":
            await ledger.set_pause(True)
            await show_status(ledger)
        elif args.command == "unpause":
            await ledger.set_pause(False)
            await show_status(ledger)
        elif args.command == "list":
            await list_transfers(ledger, args.routes or get_settings().routes_file)
        elif args.command == "clear":
            if not args.yes:
                logger.error("Refusing to clear the ledger without --yes")
                return 1
            await ledger.clear()
            print("Ledger cleared")
    except ConfigurationError as e:
        logger.error(str(e))
        return 1
    finally:
        await close_redis()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Rebalance ledger admin")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show whether rebalancing is paused")
    sub.add_parser("pause", help="Stop new transfers from being initiated")
    sub.add_parser("unpause", help="Allow new transfers again")
    list_parser = sub.add_parser("list", help="List in-flight transfers")
    list_parser.add_argument("--routes", help="Routes file (default: ROUTES_FILE)")
    clear_parser = sub.add_parser("clear", help="Wipe the ledger and pause flag")
    clear_parser.add_argument("--yes", action="store_true", help="Confirm the wipe")

    args = parser.parse_args()
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
