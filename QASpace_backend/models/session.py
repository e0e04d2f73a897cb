from sqlalchemy import Column, Integer, DateTime, Text, Float, Boolean, Index
from sqlalchemy.sql import func
from app.database import Base


class SpaceSession(Base):
    """Statistics and frozen archive of one space."""
    __tablename__ = "sessions"
    __table_args__ = (
        Index('ix_sessions_archived', 'is_archived', 'archived_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    # plain id, not a foreign key: archived sessions outlive their space
    space_id = Column(Integer, unique=True, index=True, nullable=False)
    tutor_id = Column(Integer, index=True, nullable=True)  # copied at archive time
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    actual_end_time = Column(DateTime(timezone=True), nullable=True)
    total_posts = Column(Integer, nullable=False, default=0)
    answered_posts = Column(Integer, nullable=False, default=0)
    unanswered_posts = Column(Integer, nullable=False, default=0)
    participant_count = Column(Integer, nullable=False, default=0)
    average_difficulty_score = Column(Float, nullable=False, default=0)
    archived_data = Column(Text, default="{}")  # JSON of schemas.archive.ArchivedSnapshot
    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
