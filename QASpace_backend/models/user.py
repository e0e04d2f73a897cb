import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base


class UserRole(str, enum.Enum):
    STUDENT = "student"
    TUTOR = "tutor"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(30), unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=True)  # managed by the auth service
    role = Column(String, nullable=False, default=UserRole.STUDENT.value)  # student|tutor|admin
    first_name = Column(String, default="")
    last_name = Column(String, default="")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class StudentParticipant(Base):
    """Anonymous student who joined one space with a nickname and email."""
    __tablename__ = "student_participants"
    __table_args__ = (
        UniqueConstraint('space_id', 'email', name='uq_participant_space_email'),
    )

    id = Column(Integer, primary_key=True, index=True)
    space_id = Column(Integer, ForeignKey("spaces.id"), index=True, nullable=False)
    nickname = Column(String(50), nullable=False)
    email = Column(String, nullable=False)
    session_token = Column(String, unique=True, index=True, nullable=False)
    joined_at = Column(DateTime(timezone=True), server_default=func.now())
