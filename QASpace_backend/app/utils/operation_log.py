import json
from models.logs import OperationLog

SYSTEM_ACTOR = "system"


def add_operation_log(
    db,
    *,
    user_id,
    action: str | None,
    space_id: int | None = None,
    detail=None,
):
    if user_id is None or user_id == "" or not action:
        return
    detail_value = detail
    if detail is not None and not isinstance(detail, str):
        try:
            detail_value = json.dumps(detail, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            detail_value = str(detail)
    db.add(OperationLog(
        user_id=str(user_id),
        action=action,
        detail=detail_value,
        space_id=space_id,
    ))
