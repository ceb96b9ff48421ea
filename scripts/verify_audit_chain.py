from __future__ import annotations

import argparse
import asyncio
import sys

from tenantguard.core.logging import configure_logging
from tenantguard.persistence.db import SessionLocal, engine
from tenantguard.persistence.repos import audit as audit_repo
from tenantguard.services.audit import verify_chain


async def _verify(tenant_id: str | None) -> bool:
    async with SessionLocal() as session:
        events = await audit_repo.chain_for_tenant(session, tenant_id=tenant_id)
    await engine.dispose()
    result = verify_chain(events)
    print(f"tenant_id={tenant_id} checked={result.checked} ok={result.ok}")
    if not result.ok:
        print(f"broken_event_id={result.broken_event_id}")
    return result.ok


def main() -> None:
    parser = argparse.ArgumentParser(description="Verify the audit hash chain for one tenant")
    parser.add_argument("--tenant", default=None, help="Tenant id; omit for tenantless events")
    args = parser.parse_args()
    configure_logging()
    if not asyncio.run(_verify(args.tenant)):
        sys.exit(1)


if __name__ == "__main__":
    main()
