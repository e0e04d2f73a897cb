import logging

from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.repositories import spaces as spaces_repo
from models.space import VirtualSpace
from models.user import User, UserRole, StudentParticipant


def _split_header_names(raw_value: str, fallback: list[str]) -> list[str]:
    names = [item.strip().lower() for item in (raw_value or "").split(",") if item.strip()]
    return names or fallback


USER_HEADER_NAMES = _split_header_names(settings.AUTH_USER_HEADERS, ["x-user-id"])
TOKEN_HEADER_NAMES = _split_header_names(settings.AUTH_TOKEN_HEADERS, ["authorization", "x-auth-token"])
PARTICIPANT_HEADER = "x-participant-token"
JWT_ALGORITHM = settings.AUTH_JWT_ALGORITHM or "HS256"
logger = logging.getLogger("qaspace.security")


def _mask(value: str | None) -> str:
    value = (value or "").strip()
    if not value:
        return "-"
    if len(value) <= 8:
        return value
    return f"{value[:4]}...{value[-4:]}"


def _audit_auth_failure(request: Request | None, reason: str, *, claimed: str | None = None) -> None:
    if not request:
        logger.warning("AUTH_DENY reason=%s", reason)
        return
    path = getattr(getattr(request, "url", None), "path", "-")
    method = getattr(request, "method", "-")
    client = getattr(request, "client", None)
    ip = getattr(client, "host", "-") if client else "-"
    logger.warning(
        "AUTH_DENY reason=%s method=%s path=%s ip=%s claimed=%s",
        reason,
        method,
        path,
        ip,
        _mask(claimed),
    )


def _extract_declared_user_id(request: Request) -> str | None:
    for name in USER_HEADER_NAMES:
        value = request.headers.get(name)
        if value and value.strip():
            return value.strip()
    return None


def _extract_auth_token(request: Request) -> str | None:
    for name in TOKEN_HEADER_NAMES:
        value = request.headers.get(name)
        if not value:
            continue
        raw = value.strip()
        if name == "authorization":
            if raw.lower().startswith("bearer "):
                raw = raw.split(" ", 1)[1].strip()
            elif " " in raw:
                # only the Bearer scheme is accepted
                continue
        if raw:
            return raw
    return None


def _decode_token_user_id(request: Request, token: str) -> str:
    if not settings.AUTH_JWT_SECRET:
        _audit_auth_failure(request, "token_auth_disabled")
        raise HTTPException(status_code=401, detail="Token authentication is not configured")
    try:
        payload = jwt.decode(token, settings.AUTH_JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        _audit_auth_failure(request, "invalid_token")
        raise HTTPException(status_code=401, detail="Invalid token")
    subject = payload.get("sub")
    if not subject:
        _audit_auth_failure(request, "token_missing_sub")
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(subject)


def get_request_user_id(request: Request) -> int | None:
    token = _extract_auth_token(request)
    token_user_id = _decode_token_user_id(request, token) if token else None
    declared_user_id = _extract_declared_user_id(request)
    if token_user_id and declared_user_id and token_user_id != declared_user_id:
        _audit_auth_failure(request, "token_declared_mismatch", claimed=declared_user_id)
        raise HTTPException(status_code=403, detail="Token does not match user header")
    raw = token_user_id or declared_user_id
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        _audit_auth_failure(request, "malformed_user_id", claimed=raw)
        raise HTTPException(status_code=401, detail="Malformed user id")


async def get_optional_user(request: Request, db: AsyncSession = Depends(get_db)) -> User | None:
    user_id = get_request_user_id(request)
    if user_id is None:
        return None
    user = await spaces_repo.find_user(db, user_id)
    if not user:
        _audit_auth_failure(request, "unknown_user", claimed=str(user_id))
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


async def get_current_user(request: Request, user: User | None = Depends(get_optional_user)) -> User:
    if user is None:
        _audit_auth_failure(request, "missing_identity")
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


async def get_optional_participant(request: Request, db: AsyncSession = Depends(get_db)) -> StudentParticipant | None:
    token = (request.headers.get(PARTICIPANT_HEADER) or "").strip()
    if not token:
        return None
    participant = (await db.execute(
        select(StudentParticipant).where(StudentParticipant.session_token == token)
    )).scalar_one_or_none()
    if not participant:
        _audit_auth_failure(request, "unknown_participant_token", claimed=token)
        raise HTTPException(status_code=401, detail="Unknown participant token")
    return participant


def require_role(user: User, *roles: UserRole) -> User:
    if user.role not in {r.value for r in roles}:
        logger.warning("AUTH_DENY reason=role user=%s role=%s", user.id, user.role)
        raise HTTPException(status_code=403, detail="Insufficient role")
    return user


def is_admin(user: User | None) -> bool:
    return bool(user) and user.role == UserRole.ADMIN.value


async def require_space_tutor(db: AsyncSession, space_id: int, user: User) -> VirtualSpace:
    """The space, if ``user`` is its tutor or an admin."""
    space = await spaces_repo.find_by_id(db, space_id)
    if not space:
        raise HTTPException(status_code=404, detail="Space not found")
    if is_admin(user):
        return space
    if space.tutor_id != user.id:
        logger.warning("AUTH_DENY reason=not_space_tutor user=%s space=%s", user.id, space_id)
        raise HTTPException(status_code=403, detail="Only the tutor of this space can do this")
    return space


async def require_space_member(
    db: AsyncSession,
    space_id: int,
    user: User | None,
    participant: StudentParticipant | None = None,
) -> VirtualSpace:
    space = await spaces_repo.find_by_id(db, space_id)
    if not space:
        raise HTTPException(status_code=404, detail="Space not found")
    if participant is not None and participant.space_id == space_id:
        return space
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    if is_admin(user) or space.tutor_id == user.id:
        return space
    if not await spaces_repo.is_participant(db, space_id, user.id):
        logger.warning("AUTH_DENY reason=not_space_member user=%s space=%s", user.id, space_id)
        raise HTTPException(status_code=403, detail="You have not joined this space")
    return space
