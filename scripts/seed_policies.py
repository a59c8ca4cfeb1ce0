#!/usr/bin/env python3
"""
Seed SLA Policies
=================

Copies the policies from the SLA policy YAML file into the ``sla_settings``
table, creating tables first when needed.

Usage:
    python scripts/seed_policies.py [path/to/sla_policies.yaml]
"""

import asyncio
import sys
from pathlib import Path

from opsqueue.config import get_settings
from opsqueue.infrastructure.database import Database
from opsqueue.shared.infrastructure.logging import setup_logging
from opsqueue.sla.infrastructure import PolicyConfigManager, SQLAlchemyPolicyRepository


async def main(path: Path) -> int:
    settings = get_settings()
    setup_logging(settings.log_level, settings.environment)

    policies = PolicyConfigManager().load(path)
    if not policies:
        print(f"No valid policies in {path}")
        return 1

    database = Database(settings)
    database.connect()
    try:
        await database.create_tables()
        async with database.session() as session:
            repository = SQLAlchemyPolicyRepository(session)
            for policy in policies:
                await repository.upsert(policy)
                print(f"  {policy.service_type}: {policy.baseline_hours}h baseline")
    finally:
        await database.close()

    print(f"Seeded {len(policies)} policies")
    return 0


if __name__ == "__main__":
    policy_path = Path(sys.argv[1]) if len(sys.argv) > 1 else get_settings().sla_policy_path
    sys.exit(asyncio.run(main(policy_path)))
