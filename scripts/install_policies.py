from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from tenantguard.core.errors import InstallError
from tenantguard.core.logging import configure_logging
from tenantguard.persistence.db import engine
from tenantguard.services.audit import AuditRecorder
from tenantguard.services.authz.definitions import load_definitions
from tenantguard.services.authz.installer import install_definitions
from tenantguard.services.authz.registry import PolicyRegistry


logger = logging.getLogger("tenantguard.scripts.install_policies")


async def _install(path: str, created_by: str | None) -> None:
    try:
        definitions = load_definitions(path)
    except (OSError, ValueError, ValidationError) as exc:
        raise InstallError(f"Could not read policy file {path}: {exc}") from exc
    # Deployment runs write audit rows inline; there is no worker to drain.
    recorder = AuditRecorder(mode="inline")
    try:
        results = await install_definitions(
            definitions,
            registry=PolicyRegistry(),
            recorder=recorder,
            created_by=created_by,
        )
    finally:
        await engine.dispose()
    for result in results:
        for action, state in sorted(result.transitions.items()):
            print(f"{result.resource_type}:{action} {state} version={result.versions[action]}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Install or update authorization policies")
    parser.add_argument("--file", required=True, help="JSON list of policy definitions")
    parser.add_argument("--created-by", default="cli")
    args = parser.parse_args()
    configure_logging()
    try:
        asyncio.run(_install(args.file, args.created_by))
    except InstallError as exc:
        logger.error("policy_install_aborted detail=%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
