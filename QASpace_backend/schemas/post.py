from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime

from schemas.archive import KnowledgePoint, MediaAttachment, SessionStatistics


class PostCreate(BaseModel):
    space_id: int
    question: str = Field(min_length=1, max_length=2000)
    input_type: str = "text"  # text|ocr|voice
    original_text: Optional[str] = None
    media_attachments: List[MediaAttachment] = []


class PostUpdateRequest(BaseModel):
    post_id: int
    question: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    original_text: Optional[str] = None
    media_attachments: Optional[List[MediaAttachment]] = None


class PostAnswerRequest(BaseModel):
    post_id: int
    response: str = Field(min_length=1, max_length=5000)


class PostDeleteRequest(BaseModel):
    post_id: int


class ReplyCreate(BaseModel):
    post_id: int
    content: str = Field(min_length=1, max_length=2000)


class ReplyLikeRequest(BaseModel):
    reply_id: int
    like: bool = True


class ReplyResponse(BaseModel):
    id: int
    post_id: int
    author_name: str
    content: str
    like_count: int = 0
    liked_by_me: bool = False
    created_at: Optional[datetime] = None


class PostResponse(BaseModel):
    id: int
    space_id: int
    student_id: Optional[int] = None
    participant_id: Optional[int] = None
    student_nickname: str
    question: str
    input_type: str
    original_text: Optional[str] = None
    media_attachments: List[MediaAttachment] = []
    difficulty_level: str
    difficulty_score: float
    knowledge_points: List[KnowledgePoint] = []
    ai_hint: Optional[str] = None
    is_answered: bool
    tutor_response: Optional[str] = None
    answered_by: Optional[int] = None
    answered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    replies: List[ReplyResponse] = []


class PostListResponse(BaseModel):
    posts: List[PostResponse]


class DifficultyDistribution(BaseModel):
    easy: int = 0
    medium: int = 0
    hard: int = 0
    very_hard: int = 0
    unranked: int = 0


class SpaceStatisticsResponse(BaseModel):
    space_id: int
    statistics: SessionStatistics
    difficulty_distribution: DifficultyDistribution


class KnowledgeTopic(BaseModel):
    topic: str
    concepts: List[str]
    post_count: int


class KnowledgeSummaryResponse(BaseModel):
    space_id: int
    topics: List[KnowledgeTopic]
    summary: str
