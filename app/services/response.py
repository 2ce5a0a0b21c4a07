def list_response(items: list, limit: int, offset: int, total: int | None = None) -> dict:
    payload = {"items": items, "count": len(items), "limit": limit, "offset": offset}
    if total is not None:
        payload["total"] = total
    return payload
