from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class SessionStatistics(BaseModel):
    total_posts: int = 0
    answered_posts: int = 0
    unanswered_posts: int = 0
    participant_count: int = 0
    average_difficulty_score: float = 0.0


class ArchivedPerson(BaseModel):
    """Public view of a user or anonymous participant, copied at archive time."""
    id: int
    kind: Literal["user", "participant"] = "user"
    display_name: str
    username: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class KnowledgePoint(BaseModel):
    topic: str
    subtopic: Optional[str] = None
    concept: str


class MediaAttachment(BaseModel):
    url: str
    type: str
    original_name: str


class ArchivedReply(BaseModel):
    id: int
    author: Optional[ArchivedPerson] = None
    author_name: str
    content: str
    like_count: int = 0
    created_at: Optional[datetime] = None


class ArchivedPost(BaseModel):
    id: int
    question: str
    student: Optional[ArchivedPerson] = None
    student_nickname: str
    input_type: str
    original_text: Optional[str] = None
    media_attachments: List[MediaAttachment] = Field(default_factory=list)
    difficulty_level: str
    difficulty_score: float
    knowledge_points: List[KnowledgePoint] = Field(default_factory=list)
    is_answered: bool
    tutor_response: Optional[str] = None
    answered_by: Optional[ArchivedPerson] = None
    answered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    replies: List[ArchivedReply] = Field(default_factory=list)


class ArchivedSpace(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    code: str
    tutor: Optional[ArchivedPerson] = None
    participants: List[ArchivedPerson] = Field(default_factory=list)
    start_time: datetime
    end_time: datetime


class ArchivedSnapshot(BaseModel):
    space: ArchivedSpace
    posts: List[ArchivedPost] = Field(default_factory=list)
    statistics: SessionStatistics
    archived_at: datetime


class SessionSummary(BaseModel):
    session_id: int
    space_id: int
    space_name: Optional[str] = None
    space_code: Optional[str] = None
    tutor_id: Optional[int] = None
    start_time: datetime
    end_time: datetime
    statistics: SessionStatistics
    is_archived: bool
    archived_at: Optional[datetime] = None


class ArchivedDetail(BaseModel):
    session: SessionSummary
    data: ArchivedSnapshot


class ArchiveListResponse(BaseModel):
    archived_spaces: List[SessionSummary]


class ManualArchiveResponse(BaseModel):
    message: str
    session: SessionSummary


class TriggerArchiveResponse(BaseModel):
    message: str
    count: int
