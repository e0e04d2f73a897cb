import asyncio
import logging
from dataclasses import dataclass, field

import httpx
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.database import AsyncSessionLocal
from app.services.statistics import (
    calculate_statistics,
    difficulty_distribution,
    knowledge_topics,
    render_knowledge_summary,
)
from app.utils.media import clean_knowledge_points, decode_knowledge_points, encode_knowledge_points
from models.post import DifficultyLevel, Post
from schemas.archive import KnowledgePoint

logger = logging.getLogger("qaspace.ranking")

LEVELS = {level.value for level in DifficultyLevel if level is not DifficultyLevel.UNRANKED}

# strong references so pending ranking tasks are not garbage collected
_pending: set[asyncio.Task] = set()


@dataclass
class RankingResult:
    difficulty_level: str
    difficulty_score: float
    knowledge_points: list[KnowledgePoint] = field(default_factory=list)
    hint: str | None = None


def level_for_score(score: float) -> str:
    if score < 25:
        return DifficultyLevel.EASY.value
    if score < 50:
        return DifficultyLevel.MEDIUM.value
    if score < 75:
        return DifficultyLevel.HARD.value
    return DifficultyLevel.VERY_HARD.value


def normalize_score(value) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 50.0
    return min(100.0, max(0.0, score))


def normalize_result(payload: dict) -> RankingResult:
    score = normalize_score(payload.get("difficultyScore", payload.get("difficulty_score")))
    level = payload.get("difficultyLevel", payload.get("difficulty_level"))
    level = level.strip().lower() if isinstance(level, str) else ""
    if level not in LEVELS:
        level = level_for_score(score)
    points = payload.get("knowledgePoints", payload.get("knowledge_points"))
    hint = payload.get("hint")
    return RankingResult(
        difficulty_level=level,
        difficulty_score=score,
        knowledge_points=clean_knowledge_points(points if isinstance(points, list) else []),
        hint=hint.strip() if isinstance(hint, str) and hint.strip() else None,
    )


def heuristic_ranking(question: str) -> RankingResult:
    """Local fallback: longer questions rank harder."""
    score = float(min(100, round(len((question or "").strip()) / 2)))
    return RankingResult(difficulty_level=level_for_score(score), difficulty_score=score)


async def analyze_question(question: str) -> RankingResult:
    url = (settings.RANKING_API_URL or "").strip()
    if not url:
        return heuristic_ranking(question)
    headers = {}
    if settings.RANKING_API_KEY:
        headers["Authorization"] = f"Bearer {settings.RANKING_API_KEY}"
    timeout = httpx.Timeout(settings.RANKING_TIMEOUT_SECONDS, connect=5.0)
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, json={"question": question}, headers=headers)
            resp.raise_for_status()
            payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("ranking service unavailable, using heuristic: %s", exc)
        return heuristic_ranking(question)
    if not isinstance(payload, dict):
        logger.warning("ranking service returned %s, using heuristic", type(payload).__name__)
        return heuristic_ranking(question)
    return normalize_result(payload)


async def rank_post(post_id: int, question: str, session_factory=AsyncSessionLocal) -> RankingResult | None:
    """
    Rank one post and store the result. Errors are logged and the post keeps
    its unranked defaults.
    """
    try:
        result = await analyze_question(question)
        async with session_factory() as db:
            await db.execute(
                update(Post)
                .where(Post.id == post_id)
                .values(
                    difficulty_level=result.difficulty_level,
                    difficulty_score=result.difficulty_score,
                    knowledge_points=encode_knowledge_points(result.knowledge_points),
                    ai_hint=result.hint,
                )
            )
            await db.commit()
    except (SQLAlchemyError, httpx.HTTPError) as exc:
        logger.error("failed to rank post %s: %s", post_id, exc)
        return None
    except Exception:
        # runs as a detached task, nothing else would report it
        logger.exception("unexpected error while ranking post %s", post_id)
        return None
    logger.info("post %s ranked %s (%.0f)", post_id, result.difficulty_level, result.difficulty_score)
    return result


def fire_post_ranking(post_id: int, question: str) -> None:
    if not settings.RANKING_ENABLED:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("no running loop, post %s left unranked", post_id)
        return
    task = loop.create_task(rank_post(post_id, question))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


SUMMARY_POST_LIMIT = 50
NO_SUMMARY = "No questions were asked in this space."


@dataclass
class SessionReport:
    summary: str
    source: str


def _summary_entries(posts) -> list[dict]:
    return [
        {
            "question": p.question,
            "difficulty": p.difficulty_level,
            "topics": ", ".join(point.concept for point in decode_knowledge_points(p.knowledge_points)),
        }
        for p in posts[:SUMMARY_POST_LIMIT]
    ]


def local_session_summary(posts) -> str:
    """Markdown report built from the stored rankings alone."""
    hardest = sorted(posts, key=lambda p: float(p.difficulty_score or 0), reverse=True)
    open_questions = [p for p in hardest if not p.is_answered]
    distribution = difficulty_distribution(posts).model_dump()
    stats = calculate_statistics(posts, 0)

    lines = ["## Main Topics Discussed", render_knowledge_summary(knowledge_topics(posts)), ""]
    lines.append("## Common Difficulties")
    lines.extend(f"- {level}: {count}" for level, count in distribution.items() if count)
    lines.append("")
    lines.append("## Suggested Review Points")
    if open_questions:
        lines.extend(f"- {p.question}" for p in open_questions[:5])
    else:
        lines.append("- Every question was answered.")
    lines.append("")
    lines.append("## Engagement Overview")
    lines.append(
        f"{stats.total_posts} questions, {stats.answered_posts} answered, "
        f"average difficulty {stats.average_difficulty_score:.0f}/100."
    )
    return "\n".join(lines)


async def summarize_session(posts) -> SessionReport:
    """
    Summarise a space's questions for its tutor.

    The ranking service writes the report when ``RANKING_SUMMARY_URL`` is
    set; any failure falls back to the local report.
    """
    if not posts:
        return SessionReport(summary=NO_SUMMARY, source="local")
    url = (settings.RANKING_SUMMARY_URL or "").strip()
    if not url:
        return SessionReport(summary=local_session_summary(posts), source="local")
    headers = {}
    if settings.RANKING_API_KEY:
        headers["Authorization"] = f"Bearer {settings.RANKING_API_KEY}"
    timeout = httpx.Timeout(settings.RANKING_TIMEOUT_SECONDS, connect=5.0)
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(url, json={"posts": _summary_entries(posts)}, headers=headers)
            resp.raise_for_status()
            payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("summary service unavailable, using local report: %s", exc)
        return SessionReport(summary=local_session_summary(posts), source="local")
    summary = payload.get("summary") if isinstance(payload, dict) else None
    if not isinstance(summary, str) or not summary.strip():
        logger.warning("summary service returned no summary, using local report")
        return SessionReport(summary=local_session_summary(posts), source="local")
    return SessionReport(summary=summary.strip(), source="service")
