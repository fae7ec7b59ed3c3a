import sqlite3
from dataclasses import replace

from .db import connect
from .errors import NotFoundError, ValidationError
from .logic import format_timestamp, merge_patch, parse_sort, parse_timestamp
from .models import BankAccount, Label, Operation, Page

RELATIONS = frozenset({"bankAccount", "labels"})

_SORT_COLUMNS = {
    "id": "id",
    "date": "date",
    "description": "description",
    "amount": "amount_cents",
}


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)


def create_bank_account(db_path, name: str, balance_cents: int = 0) -> int:
    account_name = (name or "").strip()
    if not account_name:
        raise ValidationError("bank account name required", "namerequired")
    with connect(db_path) as conn:
        try:
            cur = conn.execute(
                """
                INSERT INTO bank_account(name, balance_cents)
                VALUES (?, ?)
                """,
                (account_name, balance_cents),
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError("bank account name already exists", "nameexists") from exc
        return int(cur.lastrowid)


def get_bank_account(db_path, account_id: int) -> BankAccount | None:
    with connect(db_path) as conn:
        row = conn.execute(
            "SELECT id, name, balance_cents FROM bank_account WHERE id = ?",
            (account_id,),
        ).fetchone()
    if row is None:
        return None
    return BankAccount(id=row["id"], name=row["name"], balance_cents=row["balance_cents"])


def list_bank_accounts(db_path) -> list[BankAccount]:
    with connect(db_path) as conn:
        rows = conn.execute(
            "SELECT id, name, balance_cents FROM bank_account ORDER BY id ASC"
        ).fetchall()
    return [
        BankAccount(id=row["id"], name=row["name"], balance_cents=row["balance_cents"])
        for row in rows
    ]


def create_label(db_path, label: str) -> int:
    text = (label or "").strip()
    if len(text) < 3:
        raise ValidationError("label must be at least 3 characters", "labeltooshort")
    with connect(db_path) as conn:
        try:
            cur = conn.execute("INSERT INTO label(label) VALUES (?)", (text,))
        except sqlite3.IntegrityError as exc:
            raise ValidationError("label already exists", "labelexists") from exc
        return int(cur.lastrowid)


def get_label(db_path, label_id: int) -> Label | None:
    with connect(db_path) as conn:
        row = conn.execute(
            "SELECT id, label FROM label WHERE id = ?", (label_id,)
        ).fetchone()
    return None if row is None else Label(id=row["id"], label=row["label"])


def list_labels(db_path) -> list[Label]:
    with connect(db_path) as conn:
        rows = conn.execute("SELECT id, label FROM label ORDER BY id ASC").fetchall()
    return [Label(id=row["id"], label=row["label"]) for row in rows]


def _validate_required(operation: Operation) -> None:
    if operation.date is None:
        raise ValidationError("date required", "daterequired")
    if operation.amount_cents is None:
        raise ValidationError("amount required", "amountrequired")


def _check_identity(operation_id: int, operation: Operation) -> None:
    if operation.id is None:
        raise ValidationError("Invalid id", "idnull")
    if operation.id != operation_id:
        raise ValidationError("Invalid ID", "idinvalid")


def _validate_references(conn: sqlite3.Connection, operation: Operation) -> None:
    if operation.bank_account_id is not None:
        found = conn.execute(
            "SELECT 1 FROM bank_account WHERE id = ?", (operation.bank_account_id,)
        ).fetchone()
        if found is None:
            raise ValidationError("bank account not found", "bankaccountnotfound")
    label_ids = set(operation.label_ids or ())
    if label_ids:
        rows = conn.execute(
            f"SELECT id FROM label WHERE id IN ({_placeholders(label_ids)})",
            tuple(label_ids),
        ).fetchall()
        missing = label_ids - {row["id"] for row in rows}
        if missing:
            raise ValidationError(
                f"label not found: {', '.join(str(i) for i in sorted(missing))}",
                "labelnotfound",
            )


def _replace_labels(conn: sqlite3.Connection, operation_id: int, label_ids) -> None:
    conn.execute("DELETE FROM operation_label WHERE operation_id = ?", (operation_id,))
    conn.executemany(
        "INSERT INTO operation_label(operation_id, label_id) VALUES (?, ?)",
        [(operation_id, label_id) for label_id in dict.fromkeys(label_ids)],
    )


def _row_to_operation(row: sqlite3.Row) -> Operation:
    return Operation(
        id=row["id"],
        date=parse_timestamp(row["date"]),
        description=row["description"],
        amount_cents=int(row["amount_cents"]),
        bank_account_id=row["bank_account_id"],
    )


def _materialize(conn: sqlite3.Connection, operations: list[Operation], include) -> list[Operation]:
    unknown = set(include) - RELATIONS
    if unknown:
        raise ValidationError(
            f"unknown relation: {', '.join(sorted(unknown))}", "relationinvalid"
        )
    if not operations or not include:
        return operations

    accounts: dict[int, BankAccount] = {}
    account_ids = {op.bank_account_id for op in operations if op.bank_account_id is not None}
    if "bankAccount" in include and account_ids:
        rows = conn.execute(
            f"""
            SELECT id, name, balance_cents FROM bank_account
            WHERE id IN ({_placeholders(account_ids)})
            """,
            tuple(account_ids),
        ).fetchall()
        accounts = {
            row["id"]: BankAccount(
                id=row["id"], name=row["name"], balance_cents=row["balance_cents"]
            )
            for row in rows
        }

    labels_by_operation: dict[int, list[Label]] = {}
    if "labels" in include:
        ids = [op.id for op in operations]
        rows = conn.execute(
            f"""
            SELECT ol.operation_id, l.id, l.label
            FROM operation_label ol
            JOIN label l ON l.id = ol.label_id
            WHERE ol.operation_id IN ({_placeholders(ids)})
            ORDER BY l.id ASC
            """,
            ids,
        ).fetchall()
        for row in rows:
            labels_by_operation.setdefault(row["operation_id"], []).append(
                Label(id=row["id"], label=row["label"])
            )

    result = []
    for op in operations:
        changes = {}
        if "bankAccount" in include:
            changes["bank_account"] = accounts.get(op.bank_account_id)
        if "labels" in include:
            labels = tuple(labels_by_operation.get(op.id, ()))
            changes["labels"] = labels
            changes["label_ids"] = tuple(label.id for label in labels)
        result.append(replace(op, **changes))
    return result


def _fetch(conn: sqlite3.Connection, operation_id: int, include=frozenset()) -> Operation | None:
    row = conn.execute(
        """
        SELECT id, date, description, amount_cents, bank_account_id
        FROM operation
        WHERE id = ?
        """,
        (operation_id,),
    ).fetchone()
    if row is None:
        return None
    return _materialize(conn, [_row_to_operation(row)], include)[0]


def operation_exists(db_path, operation_id: int) -> bool:
    with connect(db_path) as conn:
        return (
            conn.execute("SELECT 1 FROM operation WHERE id = ?", (operation_id,)).fetchone()
            is not None
        )


def create_operation(db_path, operation: Operation) -> Operation:
    if operation.id is not None:
        raise ValidationError("A new operation cannot already have an ID", "idexists")
    _validate_required(operation)
    with connect(db_path) as conn:
        _validate_references(conn, operation)
        cur = conn.execute(
            """
            INSERT INTO operation(date, description, amount_cents, bank_account_id)
            VALUES (?, ?, ?, ?)
            """,
            (
                format_timestamp(operation.date),
                operation.description,
                operation.amount_cents,
                operation.bank_account_id,
            ),
        )
        operation_id = int(cur.lastrowid)
        _replace_labels(conn, operation_id, operation.label_ids or ())
        return _fetch(conn, operation_id, RELATIONS)


def update_operation(db_path, operation_id: int, operation: Operation) -> Operation:
    """Replace every field of an existing operation, label links included."""
    _check_identity(operation_id, operation)
    _validate_required(operation)
    with connect(db_path) as conn:
        if _fetch(conn, operation_id) is None:
            raise NotFoundError("Entity not found", "idnotfound")
        _validate_references(conn, operation)
        conn.execute(
            """
            UPDATE operation
            SET date = ?, description = ?, amount_cents = ?, bank_account_id = ?
            WHERE id = ?
            """,
            (
                format_timestamp(operation.date),
                operation.description,
                operation.amount_cents,
                operation.bank_account_id,
                operation_id,
            ),
        )
        _replace_labels(conn, operation_id, operation.label_ids or ())
        return _fetch(conn, operation_id, RELATIONS)


def partial_update_operation(db_path, operation_id: int, patch: Operation) -> Operation:
    """Overwrite only the fields ``patch`` carries; null fields are left alone."""
    _check_identity(operation_id, patch)
    with connect(db_path) as conn:
        existing = _fetch(conn, operation_id)
        if existing is None:
            raise NotFoundError("Entity not found", "idnotfound")
        merged = merge_patch(existing, patch)
        _validate_references(conn, merged)
        conn.execute(
            """
            UPDATE operation
            SET date = ?, description = ?, amount_cents = ?, bank_account_id = ?
            WHERE id = ?
            """,
            (
                format_timestamp(merged.date),
                merged.description,
                merged.amount_cents,
                merged.bank_account_id,
                operation_id,
            ),
        )
        if patch.label_ids is not None:
            _replace_labels(conn, operation_id, patch.label_ids)
        return _fetch(conn, operation_id, RELATIONS)


def delete_operation(db_path, operation_id: int) -> bool:
    """Delete an operation. Returns False when there was nothing to delete."""
    with connect(db_path) as conn:
        cur = conn.execute("DELETE FROM operation WHERE id = ?", (operation_id,))
        return cur.rowcount > 0


def get_operation(db_path, operation_id: int, *, include=frozenset()) -> Operation:
    with connect(db_path) as conn:
        operation = _fetch(conn, operation_id, include)
    if operation is None:
        raise NotFoundError(f"operation {operation_id} not found")
    return operation


def list_operations(
    db_path, *, page: int = 0, size: int = 20, sort=None, include=frozenset()
) -> Page:
    order = parse_sort(sort)
    order_sql = ", ".join(
        f"{_SORT_COLUMNS[key]} {direction.upper()}" for key, direction in order
    )
    with connect(db_path) as conn:
        total = conn.execute("SELECT COUNT(*) AS c FROM operation").fetchone()["c"]
        rows = conn.execute(
            f"""
            SELECT id, date, description, amount_cents, bank_account_id
            FROM operation
            ORDER BY {order_sql}
            LIMIT ? OFFSET ?
            """,
            (size, page * size),
        ).fetchall()
        items = _materialize(conn, [_row_to_operation(row) for row in rows], include)
    return Page(items=items, total=int(total), page=page, size=size)


def count_operations(db_path) -> int:
    with connect(db_path) as conn:
        return int(conn.execute("SELECT COUNT(*) AS c FROM operation").fetchone()["c"])


def iter_operations(db_path, *, batch_size: int = 500):
    """Yield every stored operation in id order, one batch per connection."""
    last_id = 0
    while True:
        with connect(db_path) as conn:
            rows = conn.execute(
                """
                SELECT id, date, description, amount_cents, bank_account_id
                FROM operation
                WHERE id > ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (last_id, batch_size),
            ).fetchall()
        if not rows:
            return
        for row in rows:
            yield _row_to_operation(row)
        last_id = rows[-1]["id"]
