from sqlalchemy import select, delete, or_
from sqlalchemy.ext.asyncio import AsyncSession

from models.session import SpaceSession
from models.space import VirtualSpace, SpaceStatus


async def find_by_id(db: AsyncSession, session_id: int) -> SpaceSession | None:
    return (await db.execute(select(SpaceSession).where(SpaceSession.id == session_id))).scalar_one_or_none()


async def find_by_space(db: AsyncSession, space_id: int) -> SpaceSession | None:
    return (await db.execute(select(SpaceSession).where(SpaceSession.space_id == space_id))).scalar_one_or_none()


async def get_or_create(db: AsyncSession, space: VirtualSpace) -> SpaceSession:
    """The space's single session, created with the space's time window when missing."""
    session = await find_by_space(db, space.id)
    if session:
        return session
    session = SpaceSession(space_id=space.id, start_time=space.start_time, end_time=space.end_time)
    db.add(session)
    await db.flush()
    return session


async def list_archived(db: AsyncSession, tutor_id: int | None = None) -> list[SpaceSession]:
    """
    Archived sessions, newest first.

    Sessions of a space that is still ``active`` are left out: that only
    happens when the status commit after the snapshot failed, and the next
    sweep finishes the job. Sessions of deleted spaces are kept.
    """
    filters = [
        SpaceSession.is_archived.is_(True),
        or_(VirtualSpace.id.is_(None), VirtualSpace.status != SpaceStatus.ACTIVE.value),
    ]
    if tutor_id is not None:
        filters.append(SpaceSession.tutor_id == tutor_id)
    rows = await db.execute(
        select(SpaceSession)
        .outerjoin(VirtualSpace, VirtualSpace.id == SpaceSession.space_id)
        .where(*filters)
        .order_by(SpaceSession.archived_at.desc(), SpaceSession.id.desc())
    )
    return list(rows.scalars().all())


async def delete_for_space(db: AsyncSession, space_id: int, *, only_unarchived: bool = False) -> None:
    filters = [SpaceSession.space_id == space_id]
    if only_unarchived:
        filters.append(SpaceSession.is_archived.is_(False))
    await db.execute(delete(SpaceSession).where(*filters))
