import math
from typing import Optional, Tuple

from database import serialize_doc


def success(data=None, message: str = "Success", meta: Optional[dict] = None) -> dict:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = serialize_doc(data)
    if meta is not None:
        body["meta"] = meta
    return body


def page_params(page: int = 1, limit: int = 10, max_limit: int = 100) -> Tuple[int, int, int]:
    page = max(page, 1)
    limit = min(max(limit, 1), max_limit)
    return page, limit, (page - 1) * limit


def pagination(page: int, limit: int, total: int) -> dict:
    pages = math.ceil(total / limit) if limit else 0
    return {
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": pages,
            "has_next": page < pages,
            "has_prev": page > 1,
        }
    }
