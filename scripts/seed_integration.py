"""
Seed a test CRM integration and a channel mapping into the database.

Usage:
    python scripts/seed_integration.py
    python scripts/seed_integration.py --domain acme.bitrix24.com --member-id m1 --instance wa-main
"""
import argparse
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from linebridge.database import async_session_factory
from linebridge.models.channel_mapping import ChannelMapping
from linebridge.models.integration import Integration

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def seed(domain: str, member_id: str, instance_id: str, line: str) -> None:
    async with async_session_factory() as db:
        result = await db.execute(select(Integration).where(Integration.member_id == member_id))
        integration = result.scalar_one_or_none()
        if integration:
            logger.info("Integration for member %s already exists: %s", member_id, integration.id)
            return

        integration = Integration(
            domain=domain,
            member_id=member_id,
            client_endpoint=f"https://{domain}/rest/",
            instance_id=instance_id,
            token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
        integration.access_token = "seed_access_token"
        integration.refresh_token = "seed_refresh_token"
        db.add(integration)
        await db.flush()

        db.add(ChannelMapping(
            integration_id=integration.id,
            instance_id=instance_id,
            line_id=line,
            line_name=f"Open Line {line}",
        ))
        await db.commit()
        logger.info("Seeded integration %s (%s) with line %s -> %s", integration.id, domain, line, instance_id)


async def main():
    parser = argparse.ArgumentParser(description="Seed a test CRM integration")
    parser.add_argument("--domain", default="demo.bitrix24.com")
    parser.add_argument("--member-id", default="demo_member")
    parser.add_argument("--instance", default="wa-demo")
    parser.add_argument("--line", default="1")
    args = parser.parse_args()
    await seed(args.domain, args.member_id, args.instance, args.line)


if __name__ == "__main__":
    asyncio.run(main())
