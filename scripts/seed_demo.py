from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import sys

from sqlalchemy import select

from trainingdesk.domain.events import Actor
from trainingdesk.domain.models import ENDORSEMENT_TIER1, ENDORSEMENT_TIER2, Course, Endorsement
from trainingdesk.persistence.db import SessionLocal, create_all
from trainingdesk.services.endorsements import grant_endorsement
from trainingdesk.services.policy import utc_now


SEED_ACTOR = Actor(id="seed_demo", name="Seed Script")


@dataclass(frozen=True)
class DemoEndorsement:
    controller_id: int
    position: str
    tier: str
    granted_days_ago: int


DEMO_COURSES = (
    ("EDDF Tower", "TWR", 4),
    ("Langen Radar", "APP", 2),
    ("Bremen Centre", "CTR", None),
)

DEMO_ENDORSEMENTS = (
    DemoEndorsement(1000001, "EDDF_TWR", ENDORSEMENT_TIER1, 400),
    DemoEndorsement(1000002, "EDDM_APP", ENDORSEMENT_TIER1, 200),
    DemoEndorsement(1000003, "EDWW_W_CTR", ENDORSEMENT_TIER1, 30),
    DemoEndorsement(1000004, "EDDH_GNDDEL", ENDORSEMENT_TIER2, 250),
)


async def seed() -> int:
    await create_all()
    now = utc_now()
    async with SessionLocal() as session:
        existing_courses = set((await session.execute(select(Course.name))).scalars().all())
        for name, position, max_trainees in DEMO_COURSES:
            if name not in existing_courses:
                session.add(Course(name=name, position=position, max_trainees=max_trainees))
        await session.commit()

        existing = {
            (row.controller_id, row.position)
            for row in (await session.execute(select(Endorsement))).unique().scalars().all()
        }
        for item in DEMO_ENDORSEMENTS:
            if (item.controller_id, item.position) in existing:
                continue
            await grant_endorsement(
                session,
                controller_id=item.controller_id,
                position=item.position,
                tier=item.tier,
                actor=SEED_ACTOR,
                granted_at=now - timedelta(days=item.granted_days_ago),
            )
    print(f"seeded courses={len(DEMO_COURSES)} endorsements={len(DEMO_ENDORSEMENTS)}")
    return 0


def main() -> int:
    try:
        return asyncio.run(seed())
    except Exception as exc:  # noqa: BLE001 - surface seed failures clearly.
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
