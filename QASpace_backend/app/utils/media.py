import json

from pydantic import ValidationError

from schemas.archive import KnowledgePoint, MediaAttachment


def _load_list(raw: str | None) -> list:
    if not raw:
        return []
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return parsed if isinstance(parsed, list) else []


def encode_attachments(items: list[MediaAttachment] | None) -> str:
    return json.dumps([item.model_dump() for item in (items or [])], ensure_ascii=False)


def decode_attachments(raw: str | None) -> list[MediaAttachment]:
    attachments: list[MediaAttachment] = []
    for item in _load_list(raw):
        try:
            attachments.append(MediaAttachment.model_validate(item))
        except ValidationError:
            continue
    return attachments


def clean_knowledge_points(items) -> list[KnowledgePoint]:
    points: list[KnowledgePoint] = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            points.append(KnowledgePoint.model_validate(item))
        except ValidationError:
            continue
    return points


def encode_knowledge_points(points: list[KnowledgePoint] | None) -> str:
    return json.dumps([p.model_dump() for p in (points or [])], ensure_ascii=False)


def decode_knowledge_points(raw: str | None) -> list[KnowledgePoint]:
    return clean_knowledge_points(_load_list(raw))
