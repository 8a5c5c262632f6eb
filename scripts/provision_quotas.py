#!/usr/bin/env python3
"""
Quota Provisioning Script

This script sets tenant rank-check quotas and registers rank lookup provider
credentials directly in the database.

Usage:
    python scripts/provision_quotas.py quotas.json

    Or with inline data:
    python scripts/provision_quotas.py --inline '{"tenants": [{"tenant_id": "t1", "daily_limit": 50}]}'

Input Format (JSON):
{
    "tenants": [
        {"tenant_id": "tenant-1", "daily_limit": 50},
        {"tenant_id": "tenant-2", "daily_limit": -1}      // -1 = unlimited
    ],
    "integrations": [
        {
            "api_key": "fc-...",
            "api_url": "https://api.firecrawl.dev",         // Optional
            "daily_limit": 1000,                            // Optional, -1 = unlimited
            "minute_limit": 50,                             // Optional
            "tenant_id": null                               // Optional, null = shared
        }
    ]
}
"""
import asyncio
import json
import sys
import argparse
from pathlib import Path
from typing import Dict, List, Optional

# Add parent directory to path to import rank_tracker modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from rank_tracker.core.database import AsyncSessionLocal
from rank_tracker.core.config import settings as app_settings
from rank_tracker.models import ServiceIntegration
from rank_tracker.services import QuotaService
from rank_tracker.utils.time import reference_today
from sqlalchemy import select


async def register_integration(
    db,
    api_key: str,
    api_url: Optional[str] = None,
    daily_limit: int = -1,
    minute_limit: Optional[int] = None,
    tenant_id: Optional[str] = None
) -> ServiceIntegration:
    """
    Register a provider credential, or update limits of an existing one.

    Args:
        db: Database session
        api_key: Provider API key
        api_url: Optional base URL override
        daily_limit: Daily request limit (-1 for unlimited)
        minute_limit: Optional per-minute request limit
        tenant_id: Owning tenant, None for the shared credential

    Returns:
        ServiceIntegration object
    """
    result = await db.execute(
        select(ServiceIntegration).where(
            ServiceIntegration.service_name == app_settings.rank_provider_name,
            ServiceIntegration.api_key == api_key
        )
    )
    integration = result.scalar_one_or_none()

    if integration is None:
        integration = ServiceIntegration(
            service_name=app_settings.rank_provider_name,
            api_key=api_key,
            quota_reset_date=reference_today(app_settings.quota_reset_timezone)
        )
        db.add(integration)

    integration.api_url = api_url
    integration.daily_limit = daily_limit
    integration.minute_limit = minute_limit
    integration.tenant_id = tenant_id
    integration.is_active = True

    await db.commit()
    await db.refresh(integration)
    return integration


async def provision(data: Dict) -> None:
    """
    Provision tenant quotas and provider credentials.

    Args:
        data: Dict with optional "tenants" and "integrations" lists
    """
    tenants: List[Dict] = data.get("tenants", [])
    integrations: List[Dict] = data.get("integrations", [])
    failed = 0

    async with AsyncSessionLocal() as db:
        for tenant in tenants:
            tenant_id = tenant.get("tenant_id")
            if not tenant_id or "daily_limit" not in tenant:
                print("❌ Skipping tenant: tenant_id and daily_limit are required")
                failed += 1
                continue
            try:
                record = await QuotaService.set_daily_limit(db, tenant_id, int(tenant["daily_limit"]))
                limit = "unlimited" if record.is_unlimited else record.daily_quota_limit
                print(f"✅ Tenant {tenant_id}: daily limit {limit}")
            except Exception as e:
                print(f"❌ Error setting quota for {tenant_id}: {e}")
                failed += 1

        for item in integrations:
            if not item.get("api_key"):
                print("❌ Skipping integration: api_key is required")
                failed += 1
                continue
            try:
                integration = await register_integration(
                    db,
                    api_key=item["api_key"],
                    api_url=item.get("api_url"),
                    daily_limit=int(item.get("daily_limit", -1)),
                    minute_limit=item.get("minute_limit"),
                    tenant_id=item.get("tenant_id")
                )
                owner = integration.tenant_id or "shared"
                print(f"✅ Integration {integration.id} ({owner})")
            except Exception as e:
                print(f"❌ Error registering integration: {e}")
                failed += 1

    print("\n" + "="*60)
    print("Summary:")
    print(f"  Tenants: {len(tenants)}")
    print(f"  Integrations: {len(integrations)}")
    print(f"  ❌ Failed: {failed}")
    print("="*60)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Provision rank-check quotas and provider credentials",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # From a JSON file
  python scripts/provision_quotas.py quotas.json

  # Inline JSON
  python scripts/provision_quotas.py --inline '{"tenants": [{"tenant_id": "t1", "daily_limit": 50}]}'
        """
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument(
        "file",
        nargs="?",
        help="Path to JSON file containing quota data"
    )
    group.add_argument(
        "--inline",
        help="Inline JSON string containing quota data"
    )

    args = parser.parse_args()

    try:
        if args.inline:
            data = json.loads(args.inline)
        else:
            with open(args.file, 'r') as f:
                data = json.load(f)

        if not isinstance(data, dict):
            print("❌ Error: Quota data must be a JSON object")
            sys.exit(1)

    except json.JSONDecodeError as e:
        print(f"❌ Error parsing JSON: {e}")
        sys.exit(1)
    except FileNotFoundError:
        print(f"❌ Error: File not found: {args.file}")
        sys.exit(1)

    print("🚀 Starting quota provisioning...")
    print("="*60)
    asyncio.run(provision(data))


if __name__ == "__main__":
    main()
