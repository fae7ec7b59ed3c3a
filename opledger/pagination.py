from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import ValidationError
from .logic import MAX_INT64
from .models import Page

TOTAL_COUNT_HEADER = "X-Total-Count"


def resolve_page_request(page: int, size: int | None, *, default_size: int, max_size: int):
    if page < 0:
        raise ValidationError("page must not be negative", "pageinvalid")
    if size is None:
        size = default_size
    elif size < 1:
        raise ValidationError("size must be at least 1", "sizeinvalid")
    size = min(size, max_size)
    if page * size > MAX_INT64:
        raise ValidationError("page out of range", "pageinvalid")
    return page, size


def _page_url(url: str, page: int, size: int) -> str:
    parts = urlsplit(url)
    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k not in {"page", "size"}
    ]
    query += [("page", str(page)), ("size", str(size))]
    return urlunsplit(parts._replace(query=urlencode(query)))


def link_header(url: str, page: Page) -> str:
    links = []
    if page.page + 1 < page.total_pages:
        links.append((page.page + 1, "next"))
    if page.page > 0:
        links.append((page.page - 1, "prev"))
    last = page.total_pages - 1 if page.total_pages > 0 else 0
    links.append((last, "last"))
    links.append((0, "first"))
    return ",".join(
        f'<{_page_url(url, number, page.size)}>; rel="{rel}"' for number, rel in links
    )


def pagination_headers(url: str, page: Page) -> dict[str, str]:
    return {TOTAL_COUNT_HEADER: str(page.total), "Link": link_header(url, page)}
