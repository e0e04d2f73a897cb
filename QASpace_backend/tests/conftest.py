"""
Shared fixtures. The application reads its settings at import time, so the
environment is pointed at a throwaway database before anything from ``app``
is imported.
"""
import json
import os
import secrets
import tempfile
from datetime import datetime, timedelta

_TMP_DIR = tempfile.mkdtemp(prefix="qaspace-tests-")
os.environ["DATABASE_PATH"] = os.path.join(_TMP_DIR, "test.db")
os.environ["DATABASE_ECHO"] = "false"
os.environ["ARCHIVE_SCHEDULER_ENABLED"] = "false"
os.environ["RANKING_ENABLED"] = "false"
os.environ["RANKING_API_URL"] = ""
os.environ["RANKING_SUMMARY_URL"] = ""
os.environ["AUTH_JWT_SECRET"] = "test-secret"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from app.database import AsyncSessionLocal, Base, create_tables, engine  # noqa: E402
from app.services.archiving import ArchivingScheduler  # noqa: E402
from models.post import Post, PostReply, ReplyLike  # noqa: E402
from models.space import SpaceParticipant, SpaceStatus, VirtualSpace  # noqa: E402
from models.user import StudentParticipant, User, UserRole  # noqa: E402


class Factory:
    """Inserts rows through their own committed sessions."""

    def __init__(self):
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    async def _save(self, obj):
        async with AsyncSessionLocal() as db:
            db.add(obj)
            await db.commit()
            await db.refresh(obj)
        return obj

    async def user(self, role: UserRole = UserRole.STUDENT, username: str | None = None, **kwargs) -> User:
        n = self._next()
        username = username or f"{role.value}{n}"
        return await self._save(User(username=username, email=f"{username}@example.com", role=role.value, **kwargs))

    async def space(
        self,
        tutor: User,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        status: SpaceStatus = SpaceStatus.ACTIVE,
        name: str | None = None,
    ) -> VirtualSpace:
        now = datetime.utcnow()
        code = secrets.token_hex(8).upper()
        return await self._save(VirtualSpace(
            code=code,
            join_url=f"http://localhost:3000/join/{code}",
            tutor_id=tutor.id,
            name=name or f"Space {self._next()}",
            description="",
            start_time=start or now - timedelta(hours=2),
            end_time=end or now + timedelta(hours=2),
            status=status.value,
        ))

    async def join(self, space: VirtualSpace, user: User) -> SpaceParticipant:
        return await self._save(SpaceParticipant(space_id=space.id, user_id=user.id))

    async def participant(self, space: VirtualSpace, nickname: str = "anon") -> StudentParticipant:
        n = self._next()
        return await self._save(StudentParticipant(
            space_id=space.id,
            nickname=nickname,
            email=f"{nickname}{n}@example.com",
            session_token=secrets.token_urlsafe(24),
        ))

    async def post(
        self,
        space: VirtualSpace,
        author: User | StudentParticipant,
        question: str = "What is a derivative?",
        *,
        score: float = 0,
        level: str = "unranked",
        answered_by: User | None = None,
        points: list[dict] | None = None,
    ) -> Post:
        post = Post(
            space_id=space.id,
            question=question,
            difficulty_score=score,
            difficulty_level=level,
            knowledge_points=json.dumps(points or []),
        )
        if isinstance(author, StudentParticipant):
            post.participant_id = author.id
            post.student_nickname = author.nickname
        else:
            post.student_id = author.id
            post.student_nickname = author.username
        if answered_by is not None:
            post.is_answered = True
            post.answered_by = answered_by.id
            post.tutor_response = "See chapter 3."
            post.answered_at = datetime.utcnow()
        return await self._save(post)

    async def reply(self, post: Post, author: User, content: str = "Same question here") -> PostReply:
        return await self._save(PostReply(post_id=post.id, author_user_id=author.id, author_name=author.username, content=content))

    async def like(self, reply: PostReply, liker_key: str) -> ReplyLike:
        return await self._save(ReplyLike(reply_id=reply.id, liker_key=liker_key))


@pytest_asyncio.fixture
async def database():
    await create_tables()
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # connections are bound to this test's event loop
    await engine.dispose()


@pytest_asyncio.fixture
async def db(database):
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def factory(database) -> Factory:
    return Factory()


@pytest.fixture
def archiver(database) -> ArchivingScheduler:
    return ArchivingScheduler(interval_seconds=3600, archive_timeout=10, run_on_start=False)


@pytest_asyncio.fixture
async def client(database):
    from app.main import app

    app.state.archiver = ArchivingScheduler(interval_seconds=3600, archive_timeout=10, run_on_start=False)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
