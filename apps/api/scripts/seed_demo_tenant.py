"""Seed a demo tenant with an active agent, booking credential and phone number."""
from __future__ import annotations

import argparse
import asyncio

from sqlalchemy import select

from receptionist.core.config import get_settings
from receptionist.core.security import generate_token, hash_token
from receptionist.db.migrations import run_migrations
from receptionist.db.session import create_database
from receptionist.models import (
	Agent,
	AgentStatus,
	AssignmentStatus,
	AssignmentType,
	BookingCredential,
	BookingEnvironment,
	PhoneAssignment,
	Tenant,
	TenantStatus,
)
from receptionist.services.phone_numbers import request_purchase

DEMO_TENANT = {
	"slug": "elite-barbershop",
	"business_name": "Elite Barbershop",
	"timezone": "America/New_York",
	"settings": {
		"auto_create_customers": True,
		"notification_email": "owner@example.com",
		"notification_sms": "+12025550100",
		"notification_channel": "sms",
	},
}


def parse_args() -> argparse.Namespace:
	parser = argparse.ArgumentParser(description=__doc__)
	parser.add_argument("--agent-id", default="agent_demo_elite", help="provider agent id")
	parser.add_argument("--phone-number", default="+12025551000", help="E.164 number to assign")
	parser.add_argument("--square-token", default="sandbox-token", help="booking platform access token")
	parser.add_argument("--square-location", default="L_DEMO", help="booking platform location id")
	parser.add_argument(
		"--purchase-area-code",
		type=int,
		default=None,
		help="queue a phone-number purchase for this area code instead of assigning --phone-number",
	)
	return parser.parse_args()


async def seed(args: argparse.Namespace) -> str | None:
	"""Insert or refresh the demo rows; returns a freshly issued bearer token."""

	settings = get_settings()
	db = create_database(settings)
	await run_migrations(db.engine)
	token: str | None = None

	try:
		async with db.session() as session:
			async with session.begin():
				result = await session.execute(select(Tenant).where(Tenant.slug == DEMO_TENANT["slug"]))
				tenant = result.scalar_one_or_none()
				if tenant is None:
					tenant = Tenant(status=TenantStatus.ACTIVE, **DEMO_TENANT)
					session.add(tenant)
					await session.flush()
				else:
					tenant.business_name = DEMO_TENANT["business_name"]
					tenant.settings = DEMO_TENANT["settings"]
					tenant.status = TenantStatus.ACTIVE

				result = await session.execute(select(Agent).where(Agent.external_agent_id == args.agent_id))
				agent = result.scalar_one_or_none()
				token = generate_token()
				if agent is None:
					agent = Agent(
						tenant_id=tenant.id,
						external_agent_id=args.agent_id,
						bearer_token_hash=hash_token(token),
						status=AgentStatus.ACTIVE,
					)
					session.add(agent)
					await session.flush()
				else:
					agent.bearer_token_hash = hash_token(token)
					agent.status = AgentStatus.ACTIVE

				result = await session.execute(
					select(BookingCredential).where(BookingCredential.tenant_id == tenant.id)
				)
				credential = result.scalar_one_or_none()
				if credential is None:
					session.add(
						BookingCredential(
							tenant_id=tenant.id,
							merchant_id="M_DEMO",
							location_id=args.square_location,
							environment=BookingEnvironment.SANDBOX,
							access_token=args.square_token,
						)
					)
				else:
					credential.location_id = args.square_location
					credential.access_token = args.square_token

				if args.purchase_area_code is not None:
					await request_purchase(
						session,
						tenant_id=tenant.id,
						area_code=args.purchase_area_code,
						agent_id=agent.id,
					)
				else:
					result = await session.execute(
						select(PhoneAssignment).where(
							PhoneAssignment.phone_number == args.phone_number,
							PhoneAssignment.status == AssignmentStatus.ACTIVE,
						)
					)
					if result.scalar_one_or_none() is None:
						session.add(
							PhoneAssignment(
								tenant_id=tenant.id,
								agent_id=agent.id,
								phone_number=args.phone_number,
								external_phone_id=args.phone_number,
								status=AssignmentStatus.ACTIVE,
								assignment_type=AssignmentType.EXISTING,
								metadata_json={"source": "seed"},
							)
						)
	finally:
		await db.dispose()
	return token


async def main() -> None:
	args = parse_args()
	token = await seed(args)
	print(f"Demo tenant {DEMO_TENANT['slug']} ready.")
	if token:
		print(f"Agent {args.agent_id} bearer token (shown once): {token}")


if __name__ == "__main__":
	asyncio.run(main())
