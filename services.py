from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Union

from auth import Identity, NotAuthenticatedError
from models import Expense
from schemas import (
    CategoryShare,
    CategorySummaryEntry,
    ExpenseIn,
    ExpenseStats,
    ExpenseUpdate,
)
from store import ExpenseStore, RemoteError

logger = logging.getLogger(__name__)

NOT_FOUND = "Expense not found"


def _as_decimal(value: object) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def summarize_by_category(expenses: Iterable[Expense]) -> list[CategorySummaryEntry]:
    """Total ``amount`` per category, largest total first.

    Categories with equal totals keep the order in which they first appear in
    ``expenses``.
    """
    totals: dict[str, Decimal] = {}
    for expense in expenses:
        current = totals.get(expense.category, Decimal("0"))
        totals[expense.category] = current + _as_decimal(expense.amount)
    ordered = sorted(totals.items(), key=lambda item: item[1], reverse=True)
    return [CategorySummaryEntry(category=name, total=total) for name, total in ordered]


def category_shares(summary: Iterable[CategorySummaryEntry]) -> list[CategoryShare]:
    entries = list(summary)
    grand_total = sum((entry.total for entry in entries), Decimal("0"))
    shares = []
    for entry in entries:
        percent = float(entry.total / grand_total * 100) if grand_total else 0.0
        shares.append(
            CategoryShare(category=entry.category, total=entry.total, percent=percent)
        )
    return shares


def expense_stats(expenses: Iterable[Expense]) -> ExpenseStats:
    items = list(expenses)
    total = sum((_as_decimal(expense.amount) for expense in items), Decimal("0"))
    count = len(items)
    average = total / count if count else Decimal("0")
    summary = summarize_by_category(items)
    return ExpenseStats(
        total=total,
        count=count,
        average=average,
        top_category=summary[0].category if summary else "N/A",
    )


class ExpenseRepository:
    def __init__(self, store: ExpenseStore, identity: Optional[Identity]) -> None:
        self.store = store
        self.identity = identity

    def list_all(self) -> list[Expense]:
        return self.store.select(order_by="created_at", descending=True)

    def list_page(self, limit: int, offset: int = 0) -> list[Expense]:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if offset < 0:
            raise ValueError("offset must not be negative")
        return self.store.select(
            order_by="created_at", descending=True, limit=limit, offset=offset
        )

    def create(self, data: Union[ExpenseIn, Mapping[str, object]]) -> Expense:
        payload = ExpenseIn.model_validate(data)
        if self.identity is None:
            raise NotAuthenticatedError("User not authenticated")
        expense = self.store.insert(
            {
                "user_id": self.identity.id,
                "category": payload.category,
                "amount": payload.amount,
                "comments": payload.comments or "",
            }
        )
        logger.info(
            f"expense_created: id={expense.id} user={expense.user_id} "
            f"category={expense.category}"
        )
        return expense

    def update(
        self, expense_id: str, data: Union[ExpenseUpdate, Mapping[str, object]]
    ) -> Expense:
        changes = ExpenseUpdate.model_validate(data).changes()
        if not changes:
            rows = self.store.select({"id": expense_id})
        else:
            rows = self.store.update(changes, {"id": expense_id})
        if len(rows) != 1:
            raise RemoteError(NOT_FOUND)
        if changes:
            logger.info(
                f"expense_updated: id={expense_id} fields={','.join(sorted(changes))}"
            )
        return rows[0]

    def delete(self, expense_id: str) -> None:
        deleted = self.store.delete({"id": expense_id})
        if not deleted:
            raise RemoteError(NOT_FOUND)
        logger.info(f"expense_deleted: id={expense_id}")

    def category_summary(self) -> list[CategorySummaryEntry]:
        return summarize_by_category(self.list_all())

    def stats(self) -> ExpenseStats:
        return expense_stats(self.list_all())
