import sqlite3
from datetime import datetime, timezone

import pytest

from opledger.db import init_db
from opledger.errors import ValidationError
from opledger.models import BankAccount, Label, Operation
from opledger.repo import (
    RELATIONS,
    create_bank_account,
    create_label,
    create_operation,
    delete_operation,
    get_operation,
    list_bank_accounts,
    list_labels,
    list_operations,
    partial_update_operation,
    update_operation,
)
from opledger.settings import Settings

DATE = datetime(2026, 3, 10, tzinfo=timezone.utc)


def _settings(tmp_path):
    settings = Settings(
        data_dir=tmp_path,
        db_path=tmp_path / "t.sqlite",
        index_path=tmp_path / "i.sqlite",
    )
    init_db(settings)
    return settings


def test_create_and_list_bank_accounts(tmp_path):
    settings = _settings(tmp_path)

    checking = create_bank_account(settings.db_path, "Checking", 150000)
    savings = create_bank_account(settings.db_path, "  Savings ")

    accounts = list_bank_accounts(settings.db_path)
    assert accounts == [
        BankAccount(id=checking, name="Checking", balance_cents=150000),
        BankAccount(id=savings, name="Savings", balance_cents=0),
    ]


def test_bank_account_name_rules(tmp_path):
    settings = _settings(tmp_path)
    create_bank_account(settings.db_path, "Checking")

    with pytest.raises(ValidationError, match="bank account name already exists"):
        create_bank_account(settings.db_path, "Checking")
    with pytest.raises(ValidationError, match="bank account name required"):
        create_bank_account(settings.db_path, "   ")


def test_label_rules(tmp_path):
    settings = _settings(tmp_path)
    label_id = create_label(settings.db_path, "groceries")

    assert list_labels(settings.db_path) == [Label(id=label_id, label="groceries")]
    with pytest.raises(ValidationError, match="at least 3"):
        create_label(settings.db_path, "ab")
    with pytest.raises(ValidationError, match="label already exists"):
        create_label(settings.db_path, "groceries")


def test_relations_are_only_materialized_on_request(tmp_path):
    settings = _settings(tmp_path)
    account_id = create_bank_account(settings.db_path, "Checking")
    food = create_label(settings.db_path, "food")
    rent = create_label(settings.db_path, "rent")

    created = create_operation(
        settings.db_path,
        Operation(
            date=DATE,
            amount_cents=-2500,
            bank_account_id=account_id,
            label_ids=(rent, food, rent),
        ),
    )

    lazy = get_operation(settings.db_path, created.id)
    assert lazy.bank_account_id == account_id
    assert lazy.bank_account is None
    assert lazy.labels is None

    eager = get_operation(settings.db_path, created.id, include=RELATIONS)
    assert eager.bank_account == BankAccount(id=account_id, name="Checking", balance_cents=0)
    assert eager.labels == (Label(id=food, label="food"), Label(id=rent, label="rent"))

    only_labels = get_operation(settings.db_path, created.id, include={"labels"})
    assert only_labels.bank_account is None
    assert only_labels.label_ids == (food, rent)


def test_unknown_relation_is_rejected(tmp_path):
    settings = _settings(tmp_path)
    with pytest.raises(ValidationError, match="unknown relation"):
        list_operations(settings.db_path, include={"owner"})


def test_references_must_exist(tmp_path):
    settings = _settings(tmp_path)

    with pytest.raises(ValidationError, match="bank account not found"):
        create_operation(settings.db_path, Operation(date=DATE, amount_cents=1, bank_account_id=42))
    with pytest.raises(ValidationError, match="label not found: 7"):
        create_operation(settings.db_path, Operation(date=DATE, amount_cents=1, label_ids=(7,)))

    assert list_operations(settings.db_path).total == 0


def test_full_update_replaces_labels_and_partial_update_keeps_them(tmp_path):
    settings = _settings(tmp_path)
    food = create_label(settings.db_path, "food")
    rent = create_label(settings.db_path, "rent")
    created = create_operation(
        settings.db_path, Operation(date=DATE, amount_cents=1, label_ids=(food,))
    )

    patched = partial_update_operation(
        settings.db_path, created.id, Operation(id=created.id, description="lunch")
    )
    assert patched.label_ids == (food,)

    patched = partial_update_operation(
        settings.db_path, created.id, Operation(id=created.id, label_ids=(rent,))
    )
    assert patched.label_ids == (rent,)

    updated = update_operation(
        settings.db_path, created.id, Operation(id=created.id, date=DATE, amount_cents=1)
    )
    assert updated.label_ids == ()
    assert updated.labels == ()


def test_delete_removes_label_links(tmp_path):
    settings = _settings(tmp_path)
    food = create_label(settings.db_path, "food")
    created = create_operation(
        settings.db_path, Operation(date=DATE, amount_cents=1, label_ids=(food,))
    )

    delete_operation(settings.db_path, created.id)

    conn = sqlite3.connect(str(settings.db_path))
    links = conn.execute("SELECT COUNT(*) FROM operation_label").fetchone()[0]
    conn.close()
    assert links == 0
    assert list_labels(settings.db_path) == [Label(id=food, label="food")]
