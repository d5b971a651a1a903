"""Which transactions count toward a budget's spend.

A transaction matches a budget when it belongs to the same family, is a
non-deleted expense, falls in the budget's category (or the budget has no
category) and is dated inside the budget window, both ends inclusive.

``TransactionFilter`` is the only place this rule is written down. It can be
evaluated row by row in Python (``matches``) or translated into SQLAlchemy
criteria (``clauses``) so the database does the filtering and summing. Any
change to the rule must touch both methods together.
"""

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.sql.elements import ColumnElement

from models import Budget, Transaction, TransactionType


@dataclass(frozen=True)
class TransactionFilter:
    family_id: uuid.UUID
    start: date
    end: date
    category_id: Optional[uuid.UUID] = None
    type: TransactionType = TransactionType.expense
    include_deleted: bool = False

    @classmethod
    def for_budget(cls, budget: Budget) -> "TransactionFilter":
        return cls(
            family_id=budget.family_id,
            start=budget.start_date,
            end=budget.end_date,
            category_id=budget.category_id,
        )

    def matches(self, txn: Transaction) -> bool:
        if txn.family_id != self.family_id:
            return False
        if txn.type != self.type:
            return False
        if not self.include_deleted and txn.deleted_at is not None:
            return False
        if self.category_id is not None and txn.category_id != self.category_id:
            return False
        return self.start <= txn.date <= self.end

    def clauses(self) -> list[ColumnElement[bool]]:
        criteria: list[ColumnElement[bool]] = [
            Transaction.family_id == self.family_id,
            Transaction.type == self.type,
            Transaction.date.between(self.start, self.end),
        ]
        if not self.include_deleted:
            criteria.append(Transaction.deleted_at.is_(None))
        if self.category_id is not None:
            criteria.append(Transaction.category_id == self.category_id)
        return criteria


def matches(txn: Transaction, budget: Budget) -> bool:
    return TransactionFilter.for_budget(budget).matches(txn)


def covering_budget_clauses(
    family_id: uuid.UUID, category_id: uuid.UUID, on: date
) -> list[ColumnElement[bool]]:
    return [
        Budget.is_active.is_(True),
        Budget.family_id == family_id,
        or_(Budget.category_id.is_(None), Budget.category_id == category_id),
        Budget.start_date <= on,
        Budget.end_date >= on,
    ]
