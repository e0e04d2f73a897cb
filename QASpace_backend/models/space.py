import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index, Text
from sqlalchemy.sql import func
from app.database import Base


class SpaceStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    EXPIRED = "expired"


class VirtualSpace(Base):
    __tablename__ = "spaces"
    __table_args__ = (
        Index('ix_spaces_status_end_time', 'status', 'end_time'),
        # ids are never reused, archived sessions keep pointing at deleted spaces
        {'sqlite_autoincrement': True},
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, index=True, nullable=False)
    join_url = Column(String, nullable=True)  # QR payload
    tutor_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text, default="")
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False, default=SpaceStatus.ACTIVE.value)  # active|archived|expired
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class SpaceParticipant(Base):
    __tablename__ = "space_participants"
    __table_args__ = (
        UniqueConstraint('space_id', 'user_id', name='uq_space_participant'),
    )

    id = Column(Integer, primary_key=True, index=True)
    space_id = Column(Integer, ForeignKey("spaces.id"), index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())
