from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.space import ensure_joinable
from app.database import get_db
from app.errors import PermissionDeniedError
from app.repositories import posts as posts_repo
from app.repositories import spaces as spaces_repo
from app.security import get_current_user, get_optional_user, get_optional_participant, require_space_member, require_space_tutor
from app.services.ranking import fire_post_ranking
from app.services.statistics import calculate_statistics, difficulty_distribution, knowledge_topics, render_knowledge_summary
from app.utils.media import decode_attachments, decode_knowledge_points, encode_attachments
from app.utils.operation_log import add_operation_log
from models.post import Post, PostReply, InputType
from models.user import User, StudentParticipant
from schemas.post import (
    PostCreate,
    PostUpdateRequest,
    PostAnswerRequest,
    PostDeleteRequest,
    ReplyCreate,
    ReplyLikeRequest,
    ReplyResponse,
    PostResponse,
    PostListResponse,
    SpaceStatisticsResponse,
    KnowledgeSummaryResponse,
)

router = APIRouter()


def display_name(user: User) -> str:
    full_name = " ".join(part for part in (user.first_name, user.last_name) if part)
    return full_name or user.username


def liker_key(user: User | None, participant: StudentParticipant | None) -> str | None:
    if participant is not None:
        return f"participant:{participant.id}"
    if user is not None:
        return f"user:{user.id}"
    return None


def reply_response(reply: PostReply, like_count: int = 0, liked: bool = False) -> ReplyResponse:
    return ReplyResponse(
        id=reply.id,
        post_id=reply.post_id,
        author_name=reply.author_name,
        content=reply.content,
        like_count=like_count,
        liked_by_me=liked,
        created_at=reply.created_at,
    )


def post_response(post: Post, replies: list[ReplyResponse] | None = None) -> PostResponse:
    return PostResponse(
        id=post.id,
        space_id=post.space_id,
        student_id=post.student_id,
        participant_id=post.participant_id,
        student_nickname=post.student_nickname,
        question=post.question,
        input_type=post.input_type,
        original_text=post.original_text,
        media_attachments=decode_attachments(post.media_attachments),
        difficulty_level=post.difficulty_level,
        difficulty_score=post.difficulty_score or 0,
        knowledge_points=decode_knowledge_points(post.knowledge_points),
        ai_hint=post.ai_hint,
        is_answered=bool(post.is_answered),
        tutor_response=post.tutor_response,
        answered_by=post.answered_by,
        answered_at=post.answered_at,
        created_at=post.created_at,
        replies=replies or [],
    )


async def posts_with_replies(db: AsyncSession, posts: list[Post], key: str | None) -> list[PostResponse]:
    replies_map = await posts_repo.replies_by_post(db, [p.id for p in posts])
    reply_ids = [r.id for rs in replies_map.values() for r in rs]
    counts = await posts_repo.like_counts(db, reply_ids)
    liked = await posts_repo.liked_reply_ids(db, reply_ids, key)
    return [
        post_response(p, [reply_response(r, counts.get(r.id, 0), r.id in liked) for r in replies_map.get(p.id, [])])
        for p in posts
    ]


def is_author(post: Post, user: User | None, participant: StudentParticipant | None) -> bool:
    if participant is not None and post.participant_id == participant.id:
        return True
    return user is not None and post.student_id == user.id


@router.post("/create", response_model=PostResponse)
async def create_post(
    payload: PostCreate,
    user: User | None = Depends(get_optional_user),
    participant: StudentParticipant | None = Depends(get_optional_participant),
    db: AsyncSession = Depends(get_db),
):
    try:
        input_type = InputType(payload.input_type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown input type: {payload.input_type}")
    space = await require_space_member(db, payload.space_id, user, participant)
    ensure_joinable(space)
    if participant is not None and participant.space_id == space.id:
        author = {"participant_id": participant.id, "student_nickname": participant.nickname}
    else:
        author = {"student_id": user.id, "student_nickname": display_name(user)}
    post = Post(
        space_id=space.id,
        question=payload.question.strip(),
        input_type=input_type.value,
        original_text=payload.original_text,
        media_attachments=encode_attachments(payload.media_attachments),
        **author,
    )
    db.add(post)
    await db.commit()
    await db.refresh(post)
    # ranking runs in the background; the post stays unranked until it lands
    fire_post_ranking(post.id, post.question)
    return post_response(post)


@router.get("/list", response_model=PostListResponse)
async def list_posts(
    space_id: int,
    sort: str = posts_repo.SORT_DIFFICULTY,
    user: User | None = Depends(get_optional_user),
    participant: StudentParticipant | None = Depends(get_optional_participant),
    db: AsyncSession = Depends(get_db),
):
    if sort not in (posts_repo.SORT_DIFFICULTY, posts_repo.SORT_TIME):
        raise HTTPException(status_code=400, detail="sort must be 'difficulty' or 'time'")
    await require_space_member(db, space_id, user, participant)
    posts = await posts_repo.find_by_space(db, space_id, sort)
    return PostListResponse(posts=await posts_with_replies(db, posts, liker_key(user, participant)))


@router.get("/unanswered", response_model=PostListResponse)
async def list_unanswered_posts(
    space_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await require_space_tutor(db, space_id, user)
    posts = await posts_repo.find_by_space(db, space_id, posts_repo.SORT_DIFFICULTY, unanswered_only=True)
    return PostListResponse(posts=await posts_with_replies(db, posts, liker_key(user, None)))


@router.get("/detail", response_model=PostResponse)
async def get_post(
    post_id: int,
    user: User | None = Depends(get_optional_user),
    participant: StudentParticipant | None = Depends(get_optional_participant),
    db: AsyncSession = Depends(get_db),
):
    post = await posts_repo.get_by_id(db, post_id)
    await require_space_member(db, post.space_id, user, participant)
    return (await posts_with_replies(db, [post], liker_key(user, participant)))[0]


@router.post("/answer", response_model=PostResponse)
async def answer_post(
    payload: PostAnswerRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    post = await posts_repo.get_by_id(db, payload.post_id)
    await require_space_tutor(db, post.space_id, user)
    posts_repo.mark_answered(post, user.id, payload.response.strip())
    add_operation_log(db, user_id=user.id, action="post_answer", space_id=post.space_id, detail={"post_id": post.id})
    await db.commit()
    await db.refresh(post)
    return (await posts_with_replies(db, [post], liker_key(user, None)))[0]


@router.post("/update", response_model=PostResponse)
async def update_post(
    payload: PostUpdateRequest,
    user: User | None = Depends(get_optional_user),
    participant: StudentParticipant | None = Depends(get_optional_participant),
    db: AsyncSession = Depends(get_db),
):
    post = await posts_repo.get_by_id(db, payload.post_id)
    if not is_author(post, user, participant):
        raise PermissionDeniedError("Only the author can edit this post")
    # space, author and ranking fields are not editable
    if payload.question is not None:
        post.question = payload.question.strip()
    if payload.original_text is not None:
        post.original_text = payload.original_text
    if payload.media_attachments is not None:
        post.media_attachments = encode_attachments(payload.media_attachments)
    await db.commit()
    await db.refresh(post)
    return (await posts_with_replies(db, [post], liker_key(user, participant)))[0]


@router.post("/delete")
async def delete_post(
    payload: PostDeleteRequest,
    user: User | None = Depends(get_optional_user),
    participant: StudentParticipant | None = Depends(get_optional_participant),
    db: AsyncSession = Depends(get_db),
):
    post = await posts_repo.get_by_id(db, payload.post_id)
    if not is_author(post, user, participant):
        if user is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        await require_space_tutor(db, post.space_id, user)
    await posts_repo.delete_post(db, post.id)
    await db.commit()
    return {"success": True}


@router.post("/reply", response_model=ReplyResponse)
async def add_reply(
    payload: ReplyCreate,
    user: User | None = Depends(get_optional_user),
    participant: StudentParticipant | None = Depends(get_optional_participant),
    db: AsyncSession = Depends(get_db),
):
    post = await posts_repo.get_by_id(db, payload.post_id)
    await require_space_member(db, post.space_id, user, participant)
    if participant is not None and participant.space_id == post.space_id:
        reply = PostReply(post_id=post.id, author_participant_id=participant.id, author_name=participant.nickname, content=payload.content.strip())
    else:
        reply = PostReply(post_id=post.id, author_user_id=user.id, author_name=display_name(user), content=payload.content.strip())
    db.add(reply)
    await db.commit()
    await db.refresh(reply)
    return reply_response(reply)


@router.post("/reply/like")
async def like_reply(
    payload: ReplyLikeRequest,
    user: User | None = Depends(get_optional_user),
    participant: StudentParticipant | None = Depends(get_optional_participant),
    db: AsyncSession = Depends(get_db),
):
    reply = (await db.execute(select(PostReply).where(PostReply.id == payload.reply_id))).scalar_one_or_none()
    if not reply:
        raise HTTPException(status_code=404, detail="Reply not found")
    post = await posts_repo.get_by_id(db, reply.post_id)
    await require_space_member(db, post.space_id, user, participant)
    like_count = await posts_repo.set_reply_like(db, reply.id, liker_key(user, participant), payload.like)
    await db.commit()
    return {"success": True, "like_count": like_count, "liked": payload.like}


@router.get("/statistics", response_model=SpaceStatisticsResponse)
async def space_statistics(
    space_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await require_space_tutor(db, space_id, user)
    posts = await posts_repo.find_by_space(db, space_id)
    participant_count = (await spaces_repo.count_participants(db, [space_id])).get(space_id, 0)
    return SpaceStatisticsResponse(
        space_id=space_id,
        statistics=calculate_statistics(posts, participant_count),
        difficulty_distribution=difficulty_distribution(posts),
    )


@router.get("/knowledge-summary", response_model=KnowledgeSummaryResponse)
async def knowledge_summary(
    space_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await require_space_tutor(db, space_id, user)
    topics = knowledge_topics(await posts_repo.find_by_space(db, space_id))
    return KnowledgeSummaryResponse(space_id=space_id, topics=topics, summary=render_knowledge_summary(topics))
