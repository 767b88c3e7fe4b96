from __future__ import annotations

import logging
from typing import Optional, Protocol

from sqlalchemy import false, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Expense, utcnow

logger = logging.getLogger(__name__)

IMMUTABLE_COLUMNS = frozenset({"id", "user_id", "created_at"})


class RemoteError(Exception):
    """A failure reported by the expense store, message passed through as-is."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ExpenseStore(Protocol):
    def select(
        self,
        filters: Optional[dict[str, object]] = None,
        *,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[Expense]: ...

    def insert(self, row: dict[str, object]) -> Expense: ...

    def update(
        self, values: dict[str, object], filters: dict[str, object]
    ) -> list[Expense]: ...

    def delete(self, filters: dict[str, object]) -> list[str]: ...


class SQLExpenseStore:
    """Expense table access scoped to a single caller.

    Every read and write only ever touches rows owned by ``user_id``; rows of
    other users behave exactly like rows that do not exist. A store without a
    caller sees no rows at all and cannot insert.
    """

    def __init__(self, session: Session, user_id: Optional[str]) -> None:
        self.session = session
        self.user_id = user_id

    def _column(self, name: str):
        column = Expense.__table__.columns.get(name)
        if column is None:
            raise RemoteError(f"column expenses.{name} does not exist")
        return getattr(Expense, name)

    def _owned(self, filters: Optional[dict[str, object]]) -> list:
        clauses = []
        if self.user_id is None:
            clauses.append(false())
        else:
            clauses.append(Expense.user_id == self.user_id)
        for name, value in (filters or {}).items():
            clauses.append(self._column(name) == value)
        return clauses

    def _fail(self, operation: str, exc: SQLAlchemyError) -> RemoteError:
        self.session.rollback()
        message = str(getattr(exc, "orig", None) or exc)
        logger.warning(
            f"store_error: op={operation} user={self.user_id} message={message}"
        )
        return RemoteError(message)

    def select(
        self,
        filters: Optional[dict[str, object]] = None,
        *,
        order_by: str = "created_at",
        descending: bool = True,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> list[Expense]:
        column = self._column(order_by)
        stmt = (
            select(Expense)
            .where(*self._owned(filters))
            .order_by(column.desc() if descending else column.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise self._fail("select", exc) from exc

    def insert(self, row: dict[str, object]) -> Expense:
        if self.user_id is None or row.get("user_id") != self.user_id:
            raise RemoteError(
                'new row violates row-level security policy for table "expenses"'
            )
        for name in row:
            self._column(name)
        expense = Expense(**row)
        try:
            self.session.add(expense)
            self.session.commit()
            self.session.refresh(expense)
        except SQLAlchemyError as exc:
            raise self._fail("insert", exc) from exc
        return expense

    def update(
        self, values: dict[str, object], filters: dict[str, object]
    ) -> list[Expense]:
        for name in values:
            self._column(name)
            if name in IMMUTABLE_COLUMNS:
                raise RemoteError(f"column expenses.{name} can not be updated")
        rows = self.select(filters)
        if not rows:
            return []
        try:
            for expense in rows:
                for name, value in values.items():
                    setattr(expense, name, value)
                expense.updated_at = utcnow()
            self.session.commit()
            for expense in rows:
                self.session.refresh(expense)
        except SQLAlchemyError as exc:
            raise self._fail("update", exc) from exc
        return rows

    def delete(self, filters: dict[str, object]) -> list[str]:
        rows = self.select(filters)
        deleted = [expense.id for expense in rows]
        try:
            for expense in rows:
                self.session.delete(expense)
            self.session.commit()
        except SQLAlchemyError as exc:
            raise self._fail("delete", exc) from exc
        return deleted
