from collections import defaultdict
from datetime import datetime

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import NotFoundError
from models.post import Post, PostReply, ReplyLike
from models.user import User, StudentParticipant

SORT_DIFFICULTY = "difficulty"
SORT_TIME = "time"


async def find_by_id(db: AsyncSession, post_id: int) -> Post | None:
    return (await db.execute(select(Post).where(Post.id == post_id))).scalar_one_or_none()


async def get_by_id(db: AsyncSession, post_id: int) -> Post:
    post = await find_by_id(db, post_id)
    if not post:
        raise NotFoundError("Post not found")
    return post


async def find_by_space(
    db: AsyncSession,
    space_id: int,
    sort: str = SORT_DIFFICULTY,
    *,
    unanswered_only: bool = False,
) -> list[Post]:
    filters = [Post.space_id == space_id]
    if unanswered_only:
        filters.append(Post.is_answered.is_(False))
    if sort == SORT_TIME:
        order = (Post.created_at.desc(), Post.id.desc())
    else:
        # equal scores keep insertion order
        order = (Post.difficulty_score.desc(), Post.id.asc())
    rows = await db.execute(select(Post).where(*filters).order_by(*order))
    return list(rows.scalars().all())


async def count_by_space(db: AsyncSession, space_id: int) -> int:
    row = await db.execute(select(func.count(Post.id)).where(Post.space_id == space_id))
    return row.scalar_one() or 0


def mark_answered(post: Post, tutor_id: int, response: str, answered_at: datetime | None = None) -> None:
    # the four answer fields only ever change together
    post.tutor_response = response
    post.answered_by = tutor_id
    post.answered_at = answered_at or datetime.utcnow()
    post.is_answered = True


async def replies_by_post(db: AsyncSession, post_ids: list[int]) -> dict[int, list[PostReply]]:
    replies_map: dict[int, list[PostReply]] = defaultdict(list)
    if not post_ids:
        return replies_map
    rows = await db.execute(
        select(PostReply).where(PostReply.post_id.in_(post_ids)).order_by(PostReply.created_at, PostReply.id)
    )
    for reply in rows.scalars().all():
        replies_map[reply.post_id].append(reply)
    return replies_map


async def like_counts(db: AsyncSession, reply_ids: list[int]) -> dict[int, int]:
    if not reply_ids:
        return {}
    rows = await db.execute(
        select(ReplyLike.reply_id, func.count(ReplyLike.id)).where(ReplyLike.reply_id.in_(reply_ids)).group_by(ReplyLike.reply_id)
    )
    return {reply_id: count for reply_id, count in rows}


async def liked_reply_ids(db: AsyncSession, reply_ids: list[int], liker_key: str | None) -> set[int]:
    if not reply_ids or not liker_key:
        return set()
    rows = await db.execute(
        select(ReplyLike.reply_id).where(ReplyLike.reply_id.in_(reply_ids), ReplyLike.liker_key == liker_key)
    )
    return {reply_id for (reply_id,) in rows}


async def set_reply_like(db: AsyncSession, reply_id: int, liker_key: str, like: bool) -> int:
    existing = (await db.execute(
        select(ReplyLike).where(ReplyLike.reply_id == reply_id, ReplyLike.liker_key == liker_key)
    )).scalar_one_or_none()
    if like and not existing:
        db.add(ReplyLike(reply_id=reply_id, liker_key=liker_key))
    elif not like and existing:
        await db.delete(existing)
    await db.flush()
    row = await db.execute(select(func.count(ReplyLike.id)).where(ReplyLike.reply_id == reply_id))
    return row.scalar_one() or 0


async def users_by_id(db: AsyncSession, user_ids) -> dict[int, User]:
    ids = {i for i in user_ids if i is not None}
    if not ids:
        return {}
    rows = await db.execute(select(User).where(User.id.in_(ids)))
    return {u.id: u for u in rows.scalars().all()}


async def participants_by_id(db: AsyncSession, participant_ids) -> dict[int, StudentParticipant]:
    ids = {i for i in participant_ids if i is not None}
    if not ids:
        return {}
    rows = await db.execute(select(StudentParticipant).where(StudentParticipant.id.in_(ids)))
    return {p.id: p for p in rows.scalars().all()}


async def delete_post(db: AsyncSession, post_id: int) -> None:
    reply_ids = select(PostReply.id).where(PostReply.post_id == post_id)
    await db.execute(delete(ReplyLike).where(ReplyLike.reply_id.in_(reply_ids)))
    await db.execute(delete(PostReply).where(PostReply.post_id == post_id))
    await db.execute(delete(Post).where(Post.id == post_id))
