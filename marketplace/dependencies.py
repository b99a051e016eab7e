from fastapi import Query, Request


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def pagination(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
) -> tuple[int, int]:
    return page, limit
