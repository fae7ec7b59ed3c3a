from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class BankAccount:
    id: int
    name: str
    balance_cents: int


@dataclass(frozen=True)
class Label:
    id: int
    label: str


@dataclass(frozen=True)
class Operation:
    id: int | None = None
    date: datetime | None = None
    description: str | None = None
    amount_cents: int | None = None
    bank_account_id: int | None = None
    # None means "not given" (a patch leaves links untouched), () means no labels
    label_ids: tuple[int, ...] | None = None
    # materialized only when the caller asks for the relation
    bank_account: BankAccount | None = None
    labels: tuple[Label, ...] | None = None


@dataclass(frozen=True)
class Page:
    items: list
    total: int
    page: int
    size: int

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 1
        return (self.total + self.size - 1) // self.size
