import secrets
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.archives import get_archiver
from app.config import settings
from app.database import get_db
from app.errors import InvalidStateError
from app.repositories import posts as posts_repo
from app.repositories import sessions as sessions_repo
from app.repositories import spaces as spaces_repo
from app.security import get_current_user, get_optional_user, get_optional_participant, require_role, require_space_member, require_space_tutor, is_admin
from app.services.archiving import ArchivingScheduler
from app.services.ranking import summarize_session
from app.utils.operation_log import add_operation_log
from models.space import VirtualSpace, SpaceParticipant, SpaceStatus
from models.user import User, UserRole, StudentParticipant
from schemas.space import (
    SpaceCreate,
    SpaceResponse,
    SpacesListResponse,
    SpaceJoinRequest,
    AnonymousJoinRequest,
    AnonymousJoinResponse,
    SpaceStatusRequest,
    SpaceDeleteRequest,
    ParticipantsListResponse,
    SpaceSummaryRequest,
    SpaceSummaryResponse,
)
from schemas.user import UserPublic

router = APIRouter()


def generate_space_code() -> str:
    return secrets.token_hex(8).upper()


def build_join_url(code: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/join/{code}"


def space_response(space: VirtualSpace, tutor: User | None = None, participant_count: int = 0) -> SpaceResponse:
    return SpaceResponse(
        id=space.id,
        code=space.code,
        join_url=space.join_url,
        tutor_id=space.tutor_id,
        tutor=UserPublic.model_validate(tutor) if tutor else None,
        name=space.name,
        description=space.description,
        start_time=space.start_time,
        end_time=space.end_time,
        status=space.status,
        participant_count=participant_count,
        created_at=space.created_at,
    )


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_status(value: str | None) -> SpaceStatus | None:
    if value is None or value == "":
        return None
    try:
        return SpaceStatus(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown space status: {value}")


def ensure_joinable(space: VirtualSpace) -> None:
    if space.status != SpaceStatus.ACTIVE.value:
        raise InvalidStateError("This space is no longer active")
    if space.end_time <= datetime.utcnow():
        raise InvalidStateError("This space has expired")


@router.post("/create", response_model=SpaceResponse)
async def create_space(
    payload: SpaceCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    require_role(user, UserRole.TUTOR, UserRole.ADMIN)
    start_time = to_naive_utc(payload.start_time)
    end_time = to_naive_utc(payload.end_time)
    if end_time <= start_time:
        raise HTTPException(status_code=400, detail="End time must be after start time")

    while True:
        code = generate_space_code()
        if not await spaces_repo.find_by_code(db, code):
            break

    space = VirtualSpace(
        code=code,
        join_url=build_join_url(code),
        tutor_id=user.id,
        name=payload.name.strip(),
        description=(payload.description or "").strip(),
        start_time=start_time,
        end_time=end_time,
        status=SpaceStatus.ACTIVE.value,
    )
    db.add(space)
    await db.flush()
    await sessions_repo.get_or_create(db, space)
    add_operation_log(db, user_id=user.id, action="space_create", space_id=space.id, detail={"code": code})
    await db.commit()
    await db.refresh(space)
    return space_response(space, user)


@router.get("/code/{code}", response_model=SpaceResponse)
async def get_space_by_code(code: str, db: AsyncSession = Depends(get_db)):
    space = await spaces_repo.find_by_code(db, code.strip().upper())
    if not space:
        raise HTTPException(status_code=404, detail="Space not found")
    tutor = await spaces_repo.find_user(db, space.tutor_id)
    counts = await spaces_repo.count_participants(db, [space.id])
    return space_response(space, tutor, counts.get(space.id, 0))


@router.get("/info", response_model=SpaceResponse)
async def space_info(
    space_id: int,
    user: User | None = Depends(get_optional_user),
    participant: StudentParticipant | None = Depends(get_optional_participant),
    db: AsyncSession = Depends(get_db),
):
    space = await require_space_member(db, space_id, user, participant)
    tutor = await spaces_repo.find_user(db, space.tutor_id)
    counts = await spaces_repo.count_participants(db, [space.id])
    return space_response(space, tutor, counts.get(space.id, 0))


@router.get("/mine", response_model=SpacesListResponse)
async def list_my_spaces(
    status: str | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    require_role(user, UserRole.TUTOR, UserRole.ADMIN)
    spaces = await spaces_repo.list_by_tutor(db, user.id, parse_status(status))
    counts = await spaces_repo.count_participants(db, [s.id for s in spaces])
    return SpacesListResponse(spaces=[space_response(s, user, counts.get(s.id, 0)) for s in spaces])


@router.get("/joined", response_model=SpacesListResponse)
async def list_joined_spaces(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    spaces = await spaces_repo.list_by_participant(db, user.id)
    tutors = await posts_repo.users_by_id(db, [s.tutor_id for s in spaces])
    counts = await spaces_repo.count_participants(db, [s.id for s in spaces])
    return SpacesListResponse(spaces=[
        space_response(s, tutors.get(s.tutor_id), counts.get(s.id, 0)) for s in spaces
    ])


@router.post("/join", response_model=SpaceResponse)
async def join_space(
    payload: SpaceJoinRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    space = await spaces_repo.find_by_code(db, payload.space_code.strip().upper())
    if not space:
        raise HTTPException(status_code=404, detail="Space not found")
    ensure_joinable(space)
    if await spaces_repo.add_participant(db, space.id, user.id):
        await db.commit()
    tutor = await spaces_repo.find_user(db, space.tutor_id)
    counts = await spaces_repo.count_participants(db, [space.id])
    return space_response(space, tutor, counts.get(space.id, 0))


@router.post("/join-anonymous", response_model=AnonymousJoinResponse)
async def join_space_anonymous(payload: AnonymousJoinRequest, db: AsyncSession = Depends(get_db)):
    space = await spaces_repo.find_by_code(db, payload.space_code.strip().upper())
    if not space:
        raise HTTPException(status_code=404, detail="Space not found")
    ensure_joinable(space)
    email = payload.email.strip().lower()
    participant = (await db.execute(
        select(StudentParticipant).where(StudentParticipant.space_id == space.id, StudentParticipant.email == email)
    )).scalar_one_or_none()
    if participant:
        return AnonymousJoinResponse(
            participant_id=participant.id,
            space_id=space.id,
            nickname=participant.nickname,
            session_token=participant.session_token,
        )
    created = StudentParticipant(
        space_id=space.id,
        nickname=payload.nickname.strip(),
        email=email,
        session_token=secrets.token_urlsafe(24),
    )
    db.add(created)
    await db.commit()
    await db.refresh(created)
    return AnonymousJoinResponse(
        participant_id=created.id,
        space_id=space.id,
        nickname=created.nickname,
        session_token=created.session_token,
    )


@router.get("/participants", response_model=ParticipantsListResponse)
async def list_participants(
    space_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await require_space_tutor(db, space_id, user)
    participants = await spaces_repo.list_participants(db, space_id)
    return ParticipantsListResponse(
        participants=[UserPublic.model_validate(p) for p in participants],
        anonymous_count=await spaces_repo.count_anonymous(db, space_id),
    )


@router.post("/status", response_model=SpaceResponse)
async def update_space_status(
    payload: SpaceStatusRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    archiver: ArchivingScheduler = Depends(get_archiver),
):
    space = await require_space_tutor(db, payload.space_id, user)
    target = parse_status(payload.status)
    if target is None:
        raise HTTPException(status_code=400, detail="Missing status")
    current = SpaceStatus(space.status)
    if target != current:
        if current != SpaceStatus.ACTIVE and not is_admin(user):
            raise HTTPException(status_code=403, detail="Only an admin can reopen a closed space")
        if target == SpaceStatus.ARCHIVED:
            # archiving always goes through the snapshot path
            await archiver.archive_space(space.id, user.id, force=True)
            await db.refresh(space)
        else:
            await spaces_repo.update_status(db, space.id, target)
            add_operation_log(
                db,
                user_id=user.id,
                action="space_status",
                space_id=space.id,
                detail={"from": current.value, "to": target.value},
            )
            await db.commit()
            await db.refresh(space)
    tutor = await spaces_repo.find_user(db, space.tutor_id)
    counts = await spaces_repo.count_participants(db, [space.id])
    return space_response(space, tutor, counts.get(space.id, 0))


@router.post("/delete")
async def delete_space(
    payload: SpaceDeleteRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    space = await require_space_tutor(db, payload.space_id, user)
    if await posts_repo.count_by_space(db, space.id) > 0:
        raise InvalidStateError("Cannot delete space with existing posts. Archive it instead.")
    await db.execute(delete(SpaceParticipant).where(SpaceParticipant.space_id == space.id))
    await db.execute(delete(StudentParticipant).where(StudentParticipant.space_id == space.id))
    # archives stay readable after the space is gone
    await sessions_repo.delete_for_space(db, space.id, only_unarchived=True)
    await db.execute(delete(VirtualSpace).where(VirtualSpace.id == space.id))
    await db.commit()
    return {"success": True, "message": "Space deleted"}


@router.post("/summary", response_model=SpaceSummaryResponse)
async def summarize_space(
    payload: SpaceSummaryRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    space = await require_space_tutor(db, payload.space_id, user)
    posts = await posts_repo.find_by_space(db, space.id)
    report = await summarize_session(posts)
    return SpaceSummaryResponse(space_id=space.id, post_count=len(posts), source=report.source, summary=report.summary)
