from __future__ import annotations

import argparse
import asyncio

from consentgate.core.logging import configure_logging
from consentgate.persistence.db import SessionLocal
from consentgate.services import provision_queue, proxy_lifecycle


async def _run(subject_id: str, domain_id: str, reconcile_only: bool) -> None:
    async with SessionLocal() as session:
        if not reconcile_only:
            result = await proxy_lifecycle.create_proxy(session, subject_id=subject_id, domain_id=domain_id)
            print(f"proxy_id={result.proxy_id} correlation_id={result.correlation_id}")
            # Background mode detaches the driver; keep the loop alive until it settles.
            await provision_queue.wait_for_background_jobs()
        proxy = await proxy_lifecycle.get_owned_proxy(session, subject_id=subject_id, domain_id=domain_id)
        view = await proxy_lifecycle.get_status(session, proxy)
        print(f"status={view.effective_status} endpoint_url={view.endpoint_url}")
        for line in view.logs:
            print(f"{line.created_at.isoformat()} {line.level} {line.message}")


def main() -> None:
    # Operator entrypoint to provision or inspect one domain's proxy without the API.
    parser = argparse.ArgumentParser(description="Provision or reconcile a domain proxy")
    parser.add_argument("--subject-id", required=True)
    parser.add_argument("--domain-id", required=True)
    parser.add_argument("--status", action="store_true", help="Only reconcile and print status")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run(args.subject_id, args.domain_id, args.status))


if __name__ == "__main__":
    main()
