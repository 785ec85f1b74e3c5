#!/usr/bin/env python3
"""Swap Recovery Script.

Resumes swaps from persisted state after a crash or outage: runs one
supervisor sweep (expiry, rollback, completion, reservation sweep) or
drives a single swap until it is blocked.

Usage:
    python scripts/recover_swaps.py [--swap-id ID] [--list]

Options:
    --swap-id  Only drive this swap (advance until blocked)
    --list     Show non-terminal swaps without changing anything
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv

from atomicswap.ledger.database import init_db
from atomicswap.runtime import build_runtime

load_dotenv()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


async def list_active(runtime) -> None:
    """Print every non-terminal swap."""
    swaps = await runtime.swaps.list_active()
    if not swaps:
        print("No active swaps")
        return

    print(f"{'SWAP':<40} {'STATUS':<18} {'TIMEOUT':<20} LEGS")
    for swap in swaps:
        legs = ", ".join(f"{leg.chain}:{leg.state.value}" for leg in swap.legs)
        flag = " [ESCALATED]" if swap.rollback.escalated else ""
        print(f"{swap.swap_id:<40} {swap.status.value:<18} {swap.timeout_at:%Y-%m-%d %H:%M:%S}  {legs}{flag}")


async def main():
    parser = argparse.ArgumentParser(description="Recover swaps from persisted state")
    parser.add_argument("--swap-id", help="Only drive this swap")
    parser.add_argument("--list", action="store_true", help="List active swaps and exit")
    args = parser.parse_args()

    runtime = build_runtime()
    await init_db(runtime.db_engine)

    try:
        if args.list:
            await list_active(runtime)
            return

        if args.swap_id:
            snapshot = await runtime.engine.execute(args.swap_id)
            logger.info(f"Swap {args.swap_id} is now {snapshot['status']}")
            return

        report = await runtime.supervisor.tick()
        print(json.dumps(report.to_dict(), indent=2))
    finally:
        await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
