from __future__ import annotations

from math import ceil
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from . import config


def pagination_params(page: int | None, limit: int | None) -> tuple[int, int]:
    page = max(1, page or 1)
    limit = limit or config.PAGE_SIZE_DEFAULT
    limit = max(1, min(limit, config.PAGE_SIZE_MAX))
    return page, limit


def paginate(s: Session, q: Select, page: int | None, limit: int | None) -> tuple[list[Any], dict[str, Any]]:
    """Esegue la query paginata e ritorna (righe, meta)."""
    page, limit = pagination_params(page, limit)
    total = s.execute(select(func.count()).select_from(q.order_by(None).subquery())).scalar_one()
    rows = list(s.scalars(q.offset((page - 1) * limit).limit(limit)))
    meta = {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": ceil(total / limit) if total else 0,
        "has_next": page * limit < total,
        "has_prev": page > 1,
    }
    return rows, meta
