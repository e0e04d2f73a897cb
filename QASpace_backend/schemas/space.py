from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from schemas.user import UserPublic


class SpaceCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    start_time: datetime
    end_time: datetime


class SpaceResponse(BaseModel):
    id: int
    code: str
    join_url: Optional[str] = None
    tutor_id: int
    tutor: Optional[UserPublic] = None
    name: str
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    status: str
    participant_count: int = 0
    created_at: Optional[datetime] = None


class SpacesListResponse(BaseModel):
    spaces: list[SpaceResponse]


class SpaceJoinRequest(BaseModel):
    space_code: str


class AnonymousJoinRequest(BaseModel):
    space_code: str
    nickname: str = Field(min_length=1, max_length=50)
    email: str = Field(pattern=r"^\S+@\S+\.\S+$")


class AnonymousJoinResponse(BaseModel):
    participant_id: int
    space_id: int
    nickname: str
    session_token: str


class SpaceStatusRequest(BaseModel):
    space_id: int
    status: str


class SpaceDeleteRequest(BaseModel):
    space_id: int


class ParticipantsListResponse(BaseModel):
    participants: list[UserPublic]
    anonymous_count: int = 0


class SpaceSummaryRequest(BaseModel):
    space_id: int


class SpaceSummaryResponse(BaseModel):
    space_id: int
    post_count: int
    # "service" when the ranking service wrote it, "local" otherwise
    source: str
    summary: str
