from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.errors import NotFoundError
from app.security import get_current_user, require_role, require_space_tutor, is_admin
from app.services.archiving import ArchivingScheduler
from models.user import User, UserRole
from schemas.archive import ArchiveListResponse, ArchivedDetail, ManualArchiveResponse, TriggerArchiveResponse

router = APIRouter()


def get_archiver(request: Request) -> ArchivingScheduler:
    return request.app.state.archiver


@router.get("", response_model=ArchiveListResponse)
async def list_archived_spaces(
    user: User = Depends(get_current_user),
    archiver: ArchivingScheduler = Depends(get_archiver),
):
    require_role(user, UserRole.TUTOR, UserRole.ADMIN)
    # tutors only see their own archives
    tutor_id = None if is_admin(user) else user.id
    return ArchiveListResponse(archived_spaces=await archiver.list_archived_spaces(tutor_id))


@router.post("/trigger", response_model=TriggerArchiveResponse)
async def trigger_archiving(
    user: User = Depends(get_current_user),
    archiver: ArchivingScheduler = Depends(get_archiver),
):
    require_role(user, UserRole.ADMIN)
    count = await archiver.archive_expired_spaces()
    return TriggerArchiveResponse(message=f"Archived {count} expired space(s)", count=count)


@router.post("/manual/{space_id}", response_model=ManualArchiveResponse)
async def manual_archive(
    space_id: int,
    force: bool = False,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    archiver: ArchivingScheduler = Depends(get_archiver),
):
    require_role(user, UserRole.TUTOR, UserRole.ADMIN)
    await require_space_tutor(db, space_id, user)
    session = await archiver.archive_space(space_id, user.id, force=force)
    return ManualArchiveResponse(message="Space archived successfully", session=session)


@router.get("/{session_id}", response_model=ArchivedDetail)
async def get_archived_space_detail(
    session_id: int,
    user: User = Depends(get_current_user),
    archiver: ArchivingScheduler = Depends(get_archiver),
):
    require_role(user, UserRole.TUTOR, UserRole.ADMIN)
    detail = await archiver.get_archived_space_detail(session_id)
    if not is_admin(user) and detail.session.tutor_id != user.id:
        # do not reveal other tutors' archives
        raise NotFoundError("Archived session not found")
    return detail


@router.delete("/{session_id}")
async def delete_archived_session(
    session_id: int,
    user: User = Depends(get_current_user),
    archiver: ArchivingScheduler = Depends(get_archiver),
):
    require_role(user, UserRole.ADMIN)
    await archiver.delete_archived_session(session_id, user.id)
    return {"success": True}
