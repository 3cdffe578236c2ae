from __future__ import annotations

import argparse
import asyncio

from consentgate.core.logging import configure_logging
from consentgate.persistence.db import SessionLocal
from consentgate.persistence.repos import orphaned_stacks as orphans_repo
from consentgate.services.orphan_cleanup import cleanup_stack, sweep_orphaned_stacks


async def _run(stack_name: str | None, list_only: bool, limit: int | None) -> None:
    async with SessionLocal() as session:
        if list_only:
            for orphan in await orphans_repo.list_orphans(session, limit=limit or 100):
                print(
                    f"stack={orphan.stack_name} status={orphan.status} "
                    f"attempts={orphan.attempts} cleanup_after={orphan.cleanup_after}"
                )
            return
        if stack_name:
            result = await cleanup_stack(session, stack_name)
            print(f"stack={result.stack_name} outcome={result.outcome} status={result.status}")
            return
        sweep = await sweep_orphaned_stacks(session, limit=limit)
        print(f"examined={sweep.examined} deleted={sweep.deleted} failed={sweep.failed}")


def main() -> None:
    # Clean up stacks left behind by force resets and deletes.
    parser = argparse.ArgumentParser(description="Delete orphaned provisioning stacks")
    parser.add_argument("--stack-name", default=None, help="Delete one stack by name instead of sweeping")
    parser.add_argument("--list", action="store_true", help="List orphaned stacks without deleting")
    parser.add_argument("--limit", type=int, default=None)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run(args.stack_name, args.list, args.limit))


if __name__ == "__main__":
    main()
