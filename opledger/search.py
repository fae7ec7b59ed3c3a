"""Search index mirror for operations.

The mirror is a separate SQLite database holding one FTS5 table whose rowid
is the operation id. ``description`` is full-text indexed; ``date``,
``amount_cents`` and ``bank_account_id`` are stored unindexed.

Query syntax: whitespace separated terms, combined with AND. A term is either
free text (matched against the description, ``foo*`` for a prefix) or
``field:value`` where field is one of ``id``, ``date``, ``description`` or
``amount``. Double quotes group a phrase. ``*`` alone matches everything.
"""

import logging
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .errors import SearchBackendError, ValidationError
from .logic import MAX_INT64, amount_to_cents, format_timestamp, parse_sort, parse_timestamp
from .models import Operation, Page

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r'(?:([A-Za-z_]\w*):)?("[^"]*"|\S+)')
_DATE_PREFIX_RE = re.compile(r"^\d{4}(-\d{2}(-\d{2}(T[\d:.]*Z?)?)?)?$")

_COLUMNS = ("description", "date", "amount_cents", "bank_account_id")

_SORT_COLUMNS = {
    "id": "rowid",
    "date": "date",
    "description": "description",
    "amount": "amount_cents",
}


@contextmanager
def _connect(index_path: str | Path):
    try:
        conn = sqlite3.connect(str(index_path))
    except sqlite3.Error as exc:
        raise SearchBackendError(f"search index unavailable: {exc}") from exc
    conn.row_factory = sqlite3.Row
    try:
        with conn:
            yield conn
    except sqlite3.OperationalError as exc:
        message = str(exc)
        if "syntax error" in message or "fts5:" in message:
            raise SearchBackendError(f"malformed query: {message}", 400, "querymalformed") from exc
        raise SearchBackendError(f"search index unavailable: {message}") from exc
    except sqlite3.Error as exc:
        raise SearchBackendError(f"search index unavailable: {exc}") from exc
    finally:
        conn.close()


def init_index(index_path: str | Path) -> None:
    Path(index_path).parent.mkdir(parents=True, exist_ok=True)
    with _connect(index_path) as conn:
        existing = [
            row["name"] for row in conn.execute("PRAGMA table_info(operation_search)")
        ]
        if existing and tuple(existing) != _COLUMNS:
            # FTS5 tables cannot be altered; the mirror is rebuilt from the store
            logger.warning(
                "Search index has an old layout %s, dropped it; run `opledger reindex`",
                existing,
            )
            conn.execute("DROP TABLE operation_search")
        conn.execute(
            """
            CREATE VIRTUAL TABLE IF NOT EXISTS operation_search
            USING fts5(
                description,
                date UNINDEXED,
                amount_cents UNINDEXED,
                bank_account_id UNINDEXED,
                tokenize = 'unicode61'
            )
            """
        )


def index_operation(index_path, operation: Operation) -> None:
    """Upsert one operation into the mirror."""
    with _connect(index_path) as conn:
        _upsert(conn, operation)


def _upsert(conn: sqlite3.Connection, operation: Operation) -> None:
    conn.execute("DELETE FROM operation_search WHERE rowid = ?", (operation.id,))
    conn.execute(
        """
        INSERT INTO operation_search(rowid, description, date, amount_cents, bank_account_id)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            operation.id,
            operation.description,
            format_timestamp(operation.date),
            operation.amount_cents,
            operation.bank_account_id,
        ),
    )


def delete_from_index(index_path, operation_id: int) -> None:
    with _connect(index_path) as conn:
        conn.execute("DELETE FROM operation_search WHERE rowid = ?", (operation_id,))


def get_indexed(index_path, operation_id: int) -> Operation | None:
    with _connect(index_path) as conn:
        row = conn.execute(
            """
            SELECT rowid AS id, description, date, amount_cents, bank_account_id
            FROM operation_search
            WHERE rowid = ?
            """,
            (operation_id,),
        ).fetchone()
    return None if row is None else _row_to_operation(row)


def count_indexed(index_path) -> int:
    with _connect(index_path) as conn:
        return int(conn.execute("SELECT COUNT(*) AS c FROM operation_search").fetchone()["c"])


def clear_index(index_path) -> None:
    with _connect(index_path) as conn:
        conn.execute("DELETE FROM operation_search")


def rebuild_index(index_path, operations) -> int:
    """Replace the whole mirror with ``operations`` in one transaction."""
    count = 0
    with _connect(index_path) as conn:
        conn.execute("DELETE FROM operation_search")
        for operation in operations:
            _upsert(conn, operation)
            count += 1
    logger.info("Rebuilt search index with %d operations", count)
    return count


def _row_to_operation(row: sqlite3.Row) -> Operation:
    return Operation(
        id=row["id"],
        date=parse_timestamp(row["date"]),
        description=row["description"],
        amount_cents=None if row["amount_cents"] is None else int(row["amount_cents"]),
        bank_account_id=row["bank_account_id"],
    )


def _fts_phrase(text: str) -> str:
    prefix = text.endswith("*") and len(text) > 1
    if prefix:
        text = text[:-1]
    phrase = '"' + text.replace('"', '""') + '"'
    return phrase + " *" if prefix else phrase


@dataclass
class ParsedQuery:
    match: list[str] = field(default_factory=list)
    where: list[str] = field(default_factory=list)
    params: list = field(default_factory=list)

    @property
    def match_expression(self) -> str | None:
        return " AND ".join(self.match) if self.match else None


def parse_query(query: str) -> ParsedQuery:
    parsed = ParsedQuery()
    text = (query or "").strip()
    if text in {"", "*"}:
        return parsed
    for name, raw in _TERM_RE.findall(text):
        value = raw[1:-1] if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"') else raw
        key = name.lower()
        if not key:
            if value == "*":
                continue
            parsed.match.append(_fts_phrase(value))
        elif key == "description":
            parsed.match.append("description : " + _fts_phrase(value))
        elif key == "id":
            try:
                operation_id = int(value)
            except ValueError as exc:
                raise SearchBackendError(f"id must be an integer: {value!r}", 400, "querymalformed") from exc
            if abs(operation_id) > MAX_INT64:
                raise SearchBackendError(f"id out of range: {value!r}", 400, "querymalformed")
            parsed.params.append(operation_id)
            parsed.where.append("rowid = ?")
        elif key == "amount":
            try:
                parsed.params.append(amount_to_cents(value))
            except ValidationError as exc:
                raise SearchBackendError(f"amount is not a decimal: {value!r}", 400, "querymalformed") from exc
            parsed.where.append("amount_cents = ?")
        elif key == "date":
            if not _DATE_PREFIX_RE.match(value):
                raise SearchBackendError(f"date must be an ISO-8601 prefix: {value!r}", 400, "querymalformed")
            parsed.where.append("date LIKE ?")
            # stored dates always carry microseconds before the Z
            parsed.params.append(value.removesuffix("Z") + "%")
        else:
            raise SearchBackendError(f"unknown search field: {name!r}", 400, "querymalformed")
    return parsed


def search_operations(index_path, query: str, *, page: int = 0, size: int = 20, sort=None) -> Page:
    """Ranked search over the mirror.

    Without ``sort`` results come by relevance, best first, then by id. An
    explicit ``sort`` replaces relevance and gets the usual id tie-break.
    """
    parsed = parse_query(query)
    try:
        explicit = parse_sort(sort) if sort else None
    except ValidationError as exc:
        raise SearchBackendError(str(exc), 400, "sortinvalid") from exc

    conditions = list(parsed.where)
    params = list(parsed.params)
    if parsed.match_expression:
        conditions.insert(0, "operation_search MATCH ?")
        params.insert(0, parsed.match_expression)
        score = "bm25(operation_search)"
    else:
        score = "0.0"
    where_sql = " WHERE " + " AND ".join(conditions) if conditions else ""

    if explicit:
        order_sql = ", ".join(
            f"{_SORT_COLUMNS[key]} {direction.upper()}" for key, direction in explicit
        )
    else:
        # bm25() is lower for better matches
        order_sql = "score ASC, rowid ASC"

    with _connect(index_path) as conn:
        total = conn.execute(
            f"SELECT COUNT(*) AS c FROM operation_search{where_sql}", params
        ).fetchone()["c"]
        rows = conn.execute(
            f"""
            SELECT rowid AS id, description, date, amount_cents, bank_account_id, {score} AS score
            FROM operation_search{where_sql}
            ORDER BY {order_sql}
            LIMIT ? OFFSET ?
            """,
            [*params, size, page * size],
        ).fetchall()
    return Page(
        items=[_row_to_operation(row) for row in rows],
        total=int(total),
        page=page,
        size=size,
    )
