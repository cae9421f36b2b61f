"""分页工具：统一的 {data, meta} 信封。"""

import math

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def normalize(page: int | None, limit: int | None) -> tuple[int, int]:
    page = max(1, int(page or 1))
    limit = min(MAX_LIMIT, max(1, int(limit or DEFAULT_LIMIT)))
    return page, limit


def paginate(db, count_sql: str, select_sql: str, params: list, page: int, limit: int, mapper=dict) -> dict:
    """
    执行计数与分页查询。

    select_sql 末尾不带 LIMIT/OFFSET，由本函数追加。

    Returns:
        {"data": [...], "meta": {"total", "page", "limit", "totalPages"}}
    """
    page, limit = normalize(page, limit)
    total = db.execute(count_sql, params).fetchone()[0]
    rows = db.execute(
        select_sql + " LIMIT ? OFFSET ?", list(params) + [limit, (page - 1) * limit]
    ).fetchall()
    return {
        "data": [mapper(row) for row in rows],
        "meta": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit),
        },
    }
