from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from .logic import MAX_INT64, amount_to_cents, cents_to_amount, to_utc
from .models import BankAccount, Label, Operation


class Ref(BaseModel):
    """Reference to a related entity by id; other keys are ignored."""

    id: int = Field(ge=-MAX_INT64 - 1, le=MAX_INT64)


class BankAccountIn(BaseModel):
    name: str
    balance: Decimal = Decimal("0")


class BankAccountOut(BaseModel):
    id: int
    name: str | None = None
    balance: Decimal | None = None

    @classmethod
    def from_domain(cls, account: BankAccount) -> "BankAccountOut":
        return cls(id=account.id, name=account.name, balance=cents_to_amount(account.balance_cents))


class LabelIn(BaseModel):
    label: str


class LabelOut(BaseModel):
    id: int
    label: str

    @classmethod
    def from_domain(cls, label: Label) -> "LabelOut":
        return cls(id=label.id, label=label.label)


class OperationIn(BaseModel):
    """Body of create, update and partial update requests.

    Every field is optional here; which ones are required depends on the
    request and is checked by the store.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int | None = Field(default=None, ge=-MAX_INT64 - 1, le=MAX_INT64)
    date: datetime | None = None
    description: str | None = None
    amount: Decimal | None = None
    bank_account: Ref | None = Field(default=None, alias="bankAccount")
    labels: list[Ref] | None = None

    def to_domain(self) -> Operation:
        return Operation(
            id=self.id,
            date=None if self.date is None else to_utc(self.date),
            description=self.description,
            amount_cents=None if self.amount is None else amount_to_cents(self.amount),
            bank_account_id=None if self.bank_account is None else self.bank_account.id,
            label_ids=None if self.labels is None else tuple(ref.id for ref in self.labels),
        )


class OperationOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    date: datetime
    description: str | None = None
    amount: Decimal
    bank_account: BankAccountOut | None = Field(default=None, alias="bankAccount")
    labels: list[LabelOut] | None = None

    @classmethod
    def from_domain(cls, operation: Operation) -> "OperationOut":
        if operation.bank_account is not None:
            bank_account = BankAccountOut.from_domain(operation.bank_account)
        elif operation.bank_account_id is not None:
            bank_account = BankAccountOut(id=operation.bank_account_id)
        else:
            bank_account = None
        return cls(
            id=operation.id,
            date=operation.date,
            description=operation.description,
            amount=cents_to_amount(operation.amount_cents),
            bank_account=bank_account,
            labels=None
            if operation.labels is None
            else [LabelOut.from_domain(label) for label in operation.labels],
        )
