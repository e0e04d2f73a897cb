from datetime import datetime

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFoundError
from models.space import VirtualSpace, SpaceParticipant, SpaceStatus
from models.user import User, StudentParticipant


async def find_by_id(db: AsyncSession, space_id: int) -> VirtualSpace | None:
    return (await db.execute(select(VirtualSpace).where(VirtualSpace.id == space_id))).scalar_one_or_none()


async def get_by_id(db: AsyncSession, space_id: int) -> VirtualSpace:
    space = await find_by_id(db, space_id)
    if not space:
        raise NotFoundError("Space not found")
    return space


async def find_by_code(db: AsyncSession, code: str) -> VirtualSpace | None:
    return (await db.execute(select(VirtualSpace).where(VirtualSpace.code == code))).scalar_one_or_none()


async def find_expired_active(db: AsyncSession, now: datetime) -> list[int]:
    rows = await db.execute(
        select(VirtualSpace.id)
        .where(VirtualSpace.status == SpaceStatus.ACTIVE.value, VirtualSpace.end_time <= now)
        .order_by(VirtualSpace.end_time, VirtualSpace.id)
    )
    return [space_id for (space_id,) in rows]


async def update_status(db: AsyncSession, space_id: int, status: SpaceStatus) -> None:
    await db.execute(
        update(VirtualSpace)
        .where(VirtualSpace.id == space_id)
        .values(status=status.value, updated_at=datetime.utcnow())
    )


async def list_by_tutor(db: AsyncSession, tutor_id: int, status: SpaceStatus | None = None) -> list[VirtualSpace]:
    filters = [VirtualSpace.tutor_id == tutor_id]
    if status is not None:
        filters.append(VirtualSpace.status == status.value)
    rows = await db.execute(select(VirtualSpace).where(*filters).order_by(VirtualSpace.created_at.desc(), VirtualSpace.id.desc()))
    return list(rows.scalars().all())


async def list_by_participant(db: AsyncSession, user_id: int) -> list[VirtualSpace]:
    rows = await db.execute(
        select(VirtualSpace)
        .join(SpaceParticipant, SpaceParticipant.space_id == VirtualSpace.id)
        .where(SpaceParticipant.user_id == user_id)
        .order_by(VirtualSpace.created_at.desc(), VirtualSpace.id.desc())
    )
    return list(rows.scalars().all())


async def add_participant(db: AsyncSession, space_id: int, user_id: int) -> bool:
    """Add a member to the space; returns False if already a member."""
    existing = (await db.execute(
        select(SpaceParticipant).where(SpaceParticipant.space_id == space_id, SpaceParticipant.user_id == user_id)
    )).scalar_one_or_none()
    if existing:
        return False
    db.add(SpaceParticipant(space_id=space_id, user_id=user_id))
    return True


async def is_participant(db: AsyncSession, space_id: int, user_id: int) -> bool:
    row = await db.execute(
        select(SpaceParticipant.id).where(SpaceParticipant.space_id == space_id, SpaceParticipant.user_id == user_id)
    )
    return row.first() is not None


async def list_participants(db: AsyncSession, space_id: int) -> list[User]:
    rows = await db.execute(
        select(User)
        .join(SpaceParticipant, SpaceParticipant.user_id == User.id)
        .where(SpaceParticipant.space_id == space_id)
        .order_by(SpaceParticipant.joined_at, SpaceParticipant.id)
    )
    return list(rows.scalars().all())


async def count_participants(db: AsyncSession, space_ids: list[int]) -> dict[int, int]:
    if not space_ids:
        return {}
    rows = await db.execute(
        select(SpaceParticipant.space_id, func.count(SpaceParticipant.id))
        .where(SpaceParticipant.space_id.in_(space_ids))
        .group_by(SpaceParticipant.space_id)
    )
    return {space_id: count for space_id, count in rows}


async def count_anonymous(db: AsyncSession, space_id: int) -> int:
    row = await db.execute(select(func.count(StudentParticipant.id)).where(StudentParticipant.space_id == space_id))
    return row.scalar_one() or 0


async def find_user(db: AsyncSession, user_id: int | None) -> User | None:
    if user_id is None:
        return None
    return (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()


async def load_with_people(db: AsyncSession, space_id: int) -> tuple[VirtualSpace, User | None, list[User]]:
    """Space together with its tutor and participant users."""
    space = await get_by_id(db, space_id)
    tutor = await find_user(db, space.tutor_id)
    participants = await list_participants(db, space_id)
    return space, tutor, participants
