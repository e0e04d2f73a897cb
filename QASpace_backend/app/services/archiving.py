"""
Archiving of expired virtual spaces.

One ``ArchivingScheduler`` is built by the application and kept on
``app.state.archiver``. Its timer task sweeps every ``interval_seconds`` for
active spaces whose end time has passed and archives them one after another.
The same ``archive_space`` operation backs the manual archive endpoint.

Archiving a space writes, in order:

1. the space's session with statistics and the JSON snapshot
   (``is_archived = True``), committed;
2. the space status ``archived`` plus an operation log entry, committed.

A failure between the two commits leaves the space ``active`` with a fresh
snapshot, so the next sweep simply archives it again. Until then the session
says ``is_archived`` while the space is still live; archive listings skip
such sessions.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.database import AsyncSessionLocal
from app.errors import ArchiveTimeoutError, InvalidStateError, NotFoundError, StorageError
from app.repositories import posts as posts_repo
from app.repositories import sessions as sessions_repo
from app.repositories import spaces as spaces_repo
from app.services.statistics import calculate_statistics
from app.utils.media import decode_attachments, decode_knowledge_points
from app.utils.operation_log import SYSTEM_ACTOR, add_operation_log
from models.session import SpaceSession
from models.space import SpaceStatus
from schemas.archive import (
    ArchivedDetail,
    ArchivedPerson,
    ArchivedPost,
    ArchivedReply,
    ArchivedSnapshot,
    ArchivedSpace,
    SessionStatistics,
    SessionSummary,
)

logger = logging.getLogger("qaspace.archiving")


def user_profile(user) -> ArchivedPerson | None:
    if user is None:
        return None
    full_name = " ".join(part for part in (user.first_name, user.last_name) if part)
    return ArchivedPerson(
        id=user.id,
        kind="user",
        display_name=full_name or user.username,
        username=user.username,
        email=user.email,
        role=user.role,
    )


def participant_profile(participant) -> ArchivedPerson | None:
    if participant is None:
        return None
    return ArchivedPerson(id=participant.id, kind="participant", display_name=participant.nickname, role="student")


def build_snapshot(
    space,
    tutor,
    participants,
    posts,
    replies_map,
    reply_likes: dict[int, int],
    users: dict,
    anonymous: dict,
    statistics: SessionStatistics,
    archived_at: datetime,
) -> ArchivedSnapshot:
    """Copy everything an archive reader needs; no field refers back to live rows."""

    def author_of(user_id, participant_id):
        if user_id is not None:
            return user_profile(users.get(user_id))
        return participant_profile(anonymous.get(participant_id))

    archived_posts = []
    for p in posts:
        archived_posts.append(ArchivedPost(
            id=p.id,
            question=p.question,
            student=author_of(p.student_id, p.participant_id),
            student_nickname=p.student_nickname,
            input_type=p.input_type,
            original_text=p.original_text,
            media_attachments=decode_attachments(p.media_attachments),
            difficulty_level=p.difficulty_level,
            difficulty_score=float(p.difficulty_score or 0),
            knowledge_points=decode_knowledge_points(p.knowledge_points),
            is_answered=bool(p.is_answered),
            tutor_response=p.tutor_response,
            answered_by=user_profile(users.get(p.answered_by)) if p.answered_by is not None else None,
            answered_at=p.answered_at,
            created_at=p.created_at,
            replies=[
                ArchivedReply(
                    id=r.id,
                    author=author_of(r.author_user_id, r.author_participant_id),
                    author_name=r.author_name,
                    content=r.content,
                    like_count=reply_likes.get(r.id, 0),
                    created_at=r.created_at,
                ) for r in replies_map.get(p.id, [])
            ],
        ))
    return ArchivedSnapshot(
        space=ArchivedSpace(
            id=space.id,
            name=space.name,
            description=space.description,
            code=space.code,
            tutor=user_profile(tutor),
            participants=[user_profile(u) for u in participants],
            start_time=space.start_time,
            end_time=space.end_time,
        ),
        posts=archived_posts,
        statistics=statistics,
        archived_at=archived_at,
    )


def load_snapshot(session: SpaceSession) -> ArchivedSnapshot | None:
    if not session.is_archived or not session.archived_data:
        return None
    try:
        return ArchivedSnapshot.model_validate_json(session.archived_data)
    except ValidationError:
        logger.warning("session %s has an unreadable snapshot", session.id)
        return None


def session_statistics(session: SpaceSession) -> SessionStatistics:
    return SessionStatistics(
        total_posts=session.total_posts or 0,
        answered_posts=session.answered_posts or 0,
        unanswered_posts=session.unanswered_posts or 0,
        participant_count=session.participant_count or 0,
        average_difficulty_score=session.average_difficulty_score or 0.0,
    )


def session_summary(session: SpaceSession, snapshot: ArchivedSnapshot | None = None) -> SessionSummary:
    return SessionSummary(
        session_id=session.id,
        space_id=session.space_id,
        space_name=snapshot.space.name if snapshot else None,
        space_code=snapshot.space.code if snapshot else None,
        tutor_id=session.tutor_id,
        start_time=session.start_time,
        end_time=session.end_time,
        statistics=session_statistics(session),
        is_archived=bool(session.is_archived),
        archived_at=session.archived_at,
    )


class ArchivingScheduler:
    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        *,
        interval_seconds: float | None = None,
        archive_timeout: float | None = None,
        run_on_start: bool | None = None,
    ):
        self._session_factory = session_factory
        self.interval_seconds = settings.ARCHIVE_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        self.archive_timeout = settings.ARCHIVE_TIMEOUT_SECONDS if archive_timeout is None else archive_timeout
        self.run_on_start = settings.ARCHIVE_RUN_ON_START if run_on_start is None else run_on_start
        self._timer_task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._sweep_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    @property
    def sweeping(self) -> bool:
        return self._sweep_lock.locked()

    def start(self) -> None:
        """Start the periodic sweep; restarting replaces the previous timer."""
        if self._timer_task is not None:
            self._timer_task.cancel()
        self._timer_task = asyncio.get_running_loop().create_task(self._run())
        logger.info("archiving scheduler started (every %ss)", self.interval_seconds)

    def stop(self) -> None:
        """Cancel future sweeps. A sweep already running is left to finish."""
        if self._timer_task is None:
            return
        self._timer_task.cancel()
        self._timer_task = None
        logger.info("archiving scheduler stopped")

    async def drain(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait([self._inflight])

    async def _run(self) -> None:
        if self.run_on_start:
            await self._fire()
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self._fire()

    async def _fire(self) -> None:
        sweep = asyncio.get_running_loop().create_task(self.archive_expired_spaces())
        sweep.add_done_callback(self._sweep_done)
        self._inflight = sweep
        # asyncio.wait does not cancel the sweep when the timer task is cancelled
        await asyncio.wait([sweep])

    @staticmethod
    def _sweep_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("archive sweep failed: %s", exc, exc_info=exc)

    @asynccontextmanager
    async def _db(self):
        async with self._session_factory() as db:
            try:
                yield db
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.error("archive storage failure: %s", exc)
                raise StorageError(f"Storage failure: {exc}") from exc

    async def archive_expired_spaces(self, now: datetime | None = None) -> int:
        """Archive every active space whose end time is <= now; returns how many were archived."""
        if self._sweep_lock.locked():
            logger.warning("archive sweep already in progress, skipping")
            return 0
        async with self._sweep_lock:
            now = now or datetime.utcnow()
            async with self._db() as db:
                space_ids = await spaces_repo.find_expired_active(db, now)
            archived: list[int] = []
            for space_id in space_ids:
                try:
                    await self.archive_space(space_id)
                except InvalidStateError as exc:
                    # archived by someone else since the query
                    logger.info("skipping space %s: %s", space_id, exc.message)
                except Exception:
                    logger.exception("failed to archive space %s", space_id)
                else:
                    archived.append(space_id)
            if archived:
                logger.info("archived %d expired space(s)", len(archived))
                try:
                    async with self._db() as db:
                        add_operation_log(db, user_id=SYSTEM_ACTOR, action="archive_sweep", detail={"space_ids": archived})
                        await db.commit()
                except StorageError as exc:
                    logger.warning("could not record archive sweep: %s", exc.message)
            return len(archived)

    async def archive_space(self, space_id: int, actor_id: int | None = None, *, force: bool = False) -> SessionSummary:
        """
        Freeze one space into its session and mark it archived.

        Raises NotFoundError for an unknown space and InvalidStateError when
        the space is no longer active, unless ``force`` is set, in which case
        the existing session is recomputed in place.
        """
        try:
            return await asyncio.wait_for(
                self._archive_space(space_id, actor_id, force=force),
                timeout=self.archive_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("archiving space %s timed out after %ss", space_id, self.archive_timeout)
            raise ArchiveTimeoutError(f"Archiving space {space_id} timed out") from None

    async def _archive_space(self, space_id: int, actor_id: int | None, *, force: bool) -> SessionSummary:
        now = datetime.utcnow()
        async with self._db() as db:
            space, tutor, participants = await spaces_repo.load_with_people(db, space_id)
            if space.status != SpaceStatus.ACTIVE.value and not force:
                raise InvalidStateError(f"Space {space.code} is already {space.status}")

            posts = await posts_repo.find_by_space(db, space.id, posts_repo.SORT_DIFFICULTY)
            replies_map = await posts_repo.replies_by_post(db, [p.id for p in posts])
            replies = [r for post_replies in replies_map.values() for r in post_replies]
            reply_likes = await posts_repo.like_counts(db, [r.id for r in replies])
            users = await posts_repo.users_by_id(
                db,
                [p.student_id for p in posts] + [p.answered_by for p in posts] + [r.author_user_id for r in replies],
            )
            anonymous = await posts_repo.participants_by_id(
                db,
                [p.participant_id for p in posts] + [r.author_participant_id for r in replies],
            )

            session = await sessions_repo.get_or_create(db, space)
            statistics = calculate_statistics(posts, len(participants))
            snapshot = build_snapshot(
                space, tutor, participants, posts, replies_map, reply_likes, users, anonymous, statistics, now,
            )

            session.start_time = space.start_time
            session.end_time = space.end_time
            session.total_posts = statistics.total_posts
            session.answered_posts = statistics.answered_posts
            session.unanswered_posts = statistics.unanswered_posts
            session.participant_count = statistics.participant_count
            session.average_difficulty_score = statistics.average_difficulty_score
            session.tutor_id = space.tutor_id
            session.archived_data = snapshot.model_dump_json()
            session.is_archived = True
            session.archived_at = now
            session.actual_end_time = now
            await db.commit()

            await spaces_repo.update_status(db, space.id, SpaceStatus.ARCHIVED)
            add_operation_log(
                db,
                user_id=actor_id if actor_id is not None else SYSTEM_ACTOR,
                action="space_archive",
                space_id=space.id,
                detail={"session_id": session.id, "total_posts": statistics.total_posts, "force": force},
            )
            await db.commit()

        logger.info("space %s archived (session=%s posts=%d)", space.code, session.id, statistics.total_posts)
        return session_summary(session, snapshot)

    async def list_archived_spaces(self, tutor_id: int | None = None) -> list[SessionSummary]:
        async with self._db() as db:
            sessions = await sessions_repo.list_archived(db, tutor_id)
        return [session_summary(s, load_snapshot(s)) for s in sessions]

    async def get_archived_space_detail(self, session_id: int) -> ArchivedDetail:
        async with self._db() as db:
            session = await sessions_repo.find_by_id(db, session_id)
        if not session or not session.is_archived:
            raise NotFoundError("Archived session not found")
        snapshot = load_snapshot(session)
        if snapshot is None:
            raise NotFoundError("Archived snapshot is not readable")
        return ArchivedDetail(session=session_summary(session, snapshot), data=snapshot)

    async def delete_archived_session(self, session_id: int, actor_id: int | None = None) -> None:
        async with self._db() as db:
            session = await sessions_repo.find_by_id(db, session_id)
            if not session or not session.is_archived:
                raise NotFoundError("Archived session not found")
            space_id = session.space_id
            await db.delete(session)
            add_operation_log(
                db,
                user_id=actor_id if actor_id is not None else SYSTEM_ACTOR,
                action="archive_delete",
                space_id=space_id,
                detail={"session_id": session_id},
            )
            await db.commit()
        logger.info("archived session %s deleted", session_id)
