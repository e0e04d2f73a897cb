from typing import Iterable, Sequence

from app.utils.media import decode_knowledge_points
from models.post import DifficultyLevel
from schemas.archive import SessionStatistics
from schemas.post import DifficultyDistribution, KnowledgeTopic

NO_KNOWLEDGE_POINTS = "No knowledge points identified yet."


def calculate_statistics(posts: Sequence, participant_count: int) -> SessionStatistics:
    """
    Aggregate counts over a space's posts.

    Posts only need ``is_answered`` and ``difficulty_score``. Posts whose
    ranking has not arrived yet count with their default score of 0.
    """
    total_posts = len(posts)
    answered_posts = sum(1 for p in posts if p.is_answered)
    total_score = sum(float(p.difficulty_score or 0) for p in posts)
    average = total_score / total_posts if total_posts > 0 else 0.0
    return SessionStatistics(
        total_posts=total_posts,
        answered_posts=answered_posts,
        unanswered_posts=total_posts - answered_posts,
        participant_count=participant_count,
        average_difficulty_score=average,
    )


def difficulty_distribution(posts: Iterable) -> DifficultyDistribution:
    counts = {level.value: 0 for level in DifficultyLevel}
    for p in posts:
        level = p.difficulty_level if p.difficulty_level in counts else DifficultyLevel.UNRANKED.value
        counts[level] += 1
    return DifficultyDistribution(**counts)


def knowledge_topics(posts: Iterable) -> list[KnowledgeTopic]:
    """
    Group the knowledge points of ranked posts by topic.

    Topics and their concepts keep the order they first appear in. A post
    counts once per topic however many of its points share that topic.
    """
    concepts: dict[str, list[str]] = {}
    post_counts: dict[str, int] = {}
    for p in posts:
        seen = set()
        for point in decode_knowledge_points(p.knowledge_points):
            topic = point.topic.strip()
            concept = point.concept.strip()
            if not topic:
                continue
            bucket = concepts.setdefault(topic, [])
            if concept and concept not in bucket:
                bucket.append(concept)
            if topic not in seen:
                seen.add(topic)
                post_counts[topic] = post_counts.get(topic, 0) + 1
    return [KnowledgeTopic(topic=t, concepts=c, post_count=post_counts[t]) for t, c in concepts.items()]


def render_knowledge_summary(topics: Sequence[KnowledgeTopic]) -> str:
    if not topics:
        return NO_KNOWLEDGE_POINTS
    return "\n".join(f"**{t.topic}**: {', '.join(t.concepts)}" for t in topics)
