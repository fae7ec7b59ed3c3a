from datetime import datetime, timezone

import sqlite3

import pytest

from opledger.errors import SearchBackendError
from opledger.models import Operation
from opledger.search import (
    clear_index,
    count_indexed,
    delete_from_index,
    get_indexed,
    index_operation,
    init_index,
    parse_query,
    rebuild_index,
    search_operations,
)


def _op(id, description, amount_cents=100, date=datetime(2026, 3, 10, tzinfo=timezone.utc)):
    return Operation(id=id, date=date, description=description, amount_cents=amount_cents)


@pytest.fixture
def index_path(tmp_path):
    path = tmp_path / "i.sqlite"
    init_index(path)
    return path


def test_index_is_an_upsert(index_path):
    index_operation(index_path, _op(1, "coffee"))
    index_operation(index_path, _op(1, "tea", amount_cents=250))

    assert count_indexed(index_path) == 1
    assert get_indexed(index_path, 1) == _op(1, "tea", amount_cents=250)


def test_delete_from_index(index_path):
    index_operation(index_path, _op(1, "coffee"))
    index_operation(index_path, _op(2, "tea"))

    delete_from_index(index_path, 1)
    delete_from_index(index_path, 99)

    assert get_indexed(index_path, 1) is None
    assert count_indexed(index_path) == 1


def test_search_by_id_returns_exactly_that_record(index_path):
    for i in range(1, 6):
        index_operation(index_path, _op(i, "coffee"))

    page = search_operations(index_path, "id:3")

    assert [op.id for op in page.items] == [3]
    assert page.total == 1


def test_free_text_matches_description(index_path):
    index_operation(index_path, _op(1, "Morning coffee"))
    index_operation(index_path, _op(2, "Rent for March"))
    index_operation(index_path, _op(3, "coffee beans"))

    page = search_operations(index_path, "coffee")

    assert sorted(op.id for op in page.items) == [1, 3]


def test_prefix_and_phrase_terms(index_path):
    index_operation(index_path, _op(1, "groceries at the market"))
    index_operation(index_path, _op(2, "market groceries"))

    assert sorted(op.id for op in search_operations(index_path, "groc*").items) == [1, 2]
    phrase = search_operations(index_path, 'description:"groceries at"')
    assert [op.id for op in phrase.items] == [1]


def test_terms_are_combined(index_path):
    index_operation(index_path, _op(1, "coffee", amount_cents=350))
    index_operation(index_path, _op(2, "coffee", amount_cents=400))
    index_operation(index_path, _op(3, "tea", amount_cents=350))

    page = search_operations(index_path, "coffee amount:3.50")

    assert [op.id for op in page.items] == [1]


def test_amount_matches_by_decimal_value(index_path):
    index_operation(index_path, _op(1, "x", amount_cents=100))
    assert [op.id for op in search_operations(index_path, "amount:1.00").items] == [1]
    assert [op.id for op in search_operations(index_path, "amount:1").items] == [1]


def test_date_prefix(index_path):
    index_operation(index_path, _op(1, "a", date=datetime(2026, 3, 1, tzinfo=timezone.utc)))
    index_operation(index_path, _op(2, "b", date=datetime(2026, 4, 1, tzinfo=timezone.utc)))

    assert [op.id for op in search_operations(index_path, "date:2026-03").items] == [1]
    assert search_operations(index_path, "date:2026").total == 2


def test_date_with_full_timestamp(index_path):
    index_operation(index_path, _op(1, "a", date=datetime(2024, 1, 1, 10, tzinfo=timezone.utc)))
    index_operation(index_path, _op(2, "b", date=datetime(2024, 1, 1, 11, tzinfo=timezone.utc)))

    for query in ("date:2024-01-01T10:00:00Z", "date:2024-01-01T10:00:00.000000Z"):
        assert [op.id for op in search_operations(index_path, query).items] == [1]


def test_bank_account_reference_is_mirrored(index_path):
    operation = Operation(
        id=1,
        date=datetime(2026, 3, 10, tzinfo=timezone.utc),
        description="rent",
        amount_cents=-90000,
        bank_account_id=4,
    )
    index_operation(index_path, operation)

    assert get_indexed(index_path, 1) == operation
    assert search_operations(index_path, "rent").items[0].bank_account_id == 4


def test_relevance_orders_results_with_id_tie_break(index_path):
    index_operation(index_path, _op(1, "coffee and a long list of other unrelated words here"))
    index_operation(index_path, _op(2, "coffee coffee"))
    index_operation(index_path, _op(3, "coffee coffee"))

    page = search_operations(index_path, "coffee")

    assert [op.id for op in page.items] == [2, 3, 1]


def test_match_all_is_ordered_by_id(index_path):
    for i in (3, 1, 2):
        index_operation(index_path, _op(i, "x"))
    assert [op.id for op in search_operations(index_path, "*").items] == [1, 2, 3]
    assert search_operations(index_path, "").total == 3


def test_explicit_sort_replaces_relevance(index_path):
    index_operation(index_path, _op(1, "coffee", amount_cents=300))
    index_operation(index_path, _op(2, "coffee coffee", amount_cents=100))
    index_operation(index_path, _op(3, "coffee", amount_cents=300))

    page = search_operations(index_path, "coffee", sort=["amount,desc"])

    assert [op.id for op in page.items] == [1, 3, 2]


def test_search_paginates(index_path):
    for i in range(1, 8):
        index_operation(index_path, _op(i, "coffee"))

    page = search_operations(index_path, "*", page=1, size=3)

    assert [op.id for op in page.items] == [4, 5, 6]
    assert page.total == 7


@pytest.mark.parametrize(
    "query",
    [
        "owner:bob",
        "id:abc",
        "id:99999999999999999999",
        "amount:1.234",
        "amount:1E+20",
        "date:March",
    ],
)
def test_malformed_queries_are_client_errors(index_path, query):
    with pytest.raises(SearchBackendError) as exc_info:
        search_operations(index_path, query)
    assert exc_info.value.status_code == 400


def test_missing_index_is_unavailable(tmp_path):
    with pytest.raises(SearchBackendError) as exc_info:
        search_operations(tmp_path / "never-created.sqlite", "coffee")
    assert exc_info.value.status_code == 503


def test_unopenable_index_is_unavailable(tmp_path):
    with pytest.raises(SearchBackendError) as exc_info:
        index_operation(tmp_path, _op(1, "coffee"))
    assert exc_info.value.status_code == 503


def test_parse_query_quotes_user_text():
    parsed = parse_query('NEAR OR x"y')
    assert parsed.match_expression == '"NEAR" AND "OR" AND "x""y"'


def test_index_with_old_layout_is_recreated(tmp_path):
    path = tmp_path / "old.sqlite"
    conn = sqlite3.connect(str(path))
    conn.execute(
        "CREATE VIRTUAL TABLE operation_search"
        " USING fts5(description, date UNINDEXED, amount_cents UNINDEXED)"
    )
    conn.execute("INSERT INTO operation_search(rowid, description) VALUES (1, 'stale')")
    conn.commit()
    conn.close()

    init_index(path)
    init_index(path)

    assert count_indexed(path) == 0
    index_operation(path, _op(1, "coffee"))
    assert get_indexed(path, 1) == _op(1, "coffee")


def test_clear_and_rebuild(index_path):
    index_operation(index_path, _op(9, "stale"))

    count = rebuild_index(index_path, [_op(1, "a"), _op(2, "b")])

    assert count == 2
    assert get_indexed(index_path, 9) is None
    clear_index(index_path)
    assert count_indexed(index_path) == 0
