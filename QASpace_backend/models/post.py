import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Float, Boolean, UniqueConstraint, Index
from sqlalchemy.sql import func
from app.database import Base


class InputType(str, enum.Enum):
    TEXT = "text"
    OCR = "ocr"
    VOICE = "voice"


class DifficultyLevel(str, enum.Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    VERY_HARD = "very_hard"
    UNRANKED = "unranked"


class Post(Base):
    __tablename__ = "posts"
    __table_args__ = (
        Index('ix_posts_space_score', 'space_id', 'difficulty_score'),
    )

    id = Column(Integer, primary_key=True, index=True)
    space_id = Column(Integer, ForeignKey("spaces.id"), index=True, nullable=False)
    # exactly one of student_id / participant_id is set
    student_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=True)
    participant_id = Column(Integer, ForeignKey("student_participants.id"), index=True, nullable=True)
    student_nickname = Column(String, nullable=False)
    question = Column(Text, nullable=False)
    input_type = Column(String, nullable=False, default=InputType.TEXT.value)  # text|ocr|voice
    original_text = Column(Text, nullable=True)
    media_attachments = Column(Text, default="[]")  # JSON array of {url, type, original_name}
    difficulty_level = Column(String, nullable=False, default=DifficultyLevel.UNRANKED.value)
    difficulty_score = Column(Float, nullable=False, default=0)
    knowledge_points = Column(Text, default="[]")  # JSON array of {topic, subtopic, concept}
    ai_hint = Column(Text, nullable=True)
    tutor_response = Column(Text, nullable=True)
    is_answered = Column(Boolean, nullable=False, default=False)
    answered_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    answered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class PostReply(Base):
    __tablename__ = "post_replies"

    id = Column(Integer, primary_key=True, index=True)
    post_id = Column(Integer, ForeignKey("posts.id"), index=True, nullable=False)
    author_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    author_participant_id = Column(Integer, ForeignKey("student_participants.id"), nullable=True)
    author_name = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ReplyLike(Base):
    __tablename__ = "reply_likes"
    __table_args__ = (
        UniqueConstraint('reply_id', 'liker_key', name='uq_reply_like'),
    )

    id = Column(Integer, primary_key=True, index=True)
    reply_id = Column(Integer, ForeignKey("post_replies.id"), index=True, nullable=False)
    liker_key = Column(String, nullable=False)  # "user:<id>" or "participant:<id>"
    created_at = Column(DateTime(timezone=True), server_default=func.now())
