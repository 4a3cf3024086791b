"""
Provision a tenant and print its API key

Usage:
    python scripts/create_tenant.py <tenant-name> [api-key]
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path to import service modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from analytics_service.core.config import settings
from analytics_service.core.database import create_engine_from_settings, create_session_factory
from analytics_service.services.tenants import create_tenant


async def provision(name: str, api_key: str | None = None):
    engine = create_engine_from_settings(settings)
    try:
        tenant, api_key = await create_tenant(create_session_factory(engine), name, api_key)
    finally:
        await engine.dispose()

    print(f"Tenant created: {tenant.name}")
    print(f"Tenant ID:      {tenant.id}")
    print(f"API key:        {api_key}")


def main():
    if len(sys.argv) not in (2, 3):
        print("Usage: python scripts/create_tenant.py <tenant-name> [api-key]")
        sys.exit(1)

    asyncio.run(provision(*sys.argv[1:]))


if __name__ == "__main__":
    main()
