import uuid
from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from matching import TransactionFilter, matches
from models import Budget, BudgetPeriod, Category, Family, Transaction, TransactionType
from services import TransactionJournal

FAMILY = uuid.uuid4()
OTHER_FAMILY = uuid.uuid4()
FOOD = uuid.uuid4()
TRANSPORT = uuid.uuid4()


def _budget(category_id=None) -> Budget:
    return Budget(
        family_id=FAMILY,
        name="January",
        amount_cents=100_000,
        spent_cents=0,
        period=BudgetPeriod.monthly,
        category_id=category_id,
        start_date=date(2025, 1, 1),
        end_date=date(2025, 1, 31),
        is_active=True,
    )


def _txn(
    on: date,
    *,
    category_id=FOOD,
    type=TransactionType.expense,
    family_id=FAMILY,
    deleted_at=None,
) -> Transaction:
    return Transaction(
        family_id=family_id,
        date=on,
        type=type,
        amount_cents=1_000,
        category_id=category_id,
        deleted_at=deleted_at,
    )


def test_window_bounds_are_inclusive() -> None:
    budget = _budget(FOOD)
    assert matches(_txn(date(2025, 1, 1)), budget)
    assert matches(_txn(date(2025, 1, 31)), budget)
    assert not matches(_txn(date(2024, 12, 31)), budget)
    assert not matches(_txn(date(2025, 2, 1)), budget)


def test_only_expenses_of_the_same_family_match() -> None:
    budget = _budget()
    assert not matches(_txn(date(2025, 1, 10), type=TransactionType.income), budget)
    assert not matches(_txn(date(2025, 1, 10), family_id=OTHER_FAMILY), budget)


def test_category_scope() -> None:
    scoped = _budget(FOOD)
    family_wide = _budget(None)
    transport = _txn(date(2025, 1, 10), category_id=TRANSPORT)

    assert not matches(transport, scoped)
    assert matches(transport, family_wide)


def test_soft_deleted_transactions_do_not_match() -> None:
    budget = _budget()
    txn = _txn(date(2025, 1, 10), deleted_at=datetime(2025, 1, 11, 9, 0))
    assert not matches(txn, budget)


def test_sql_filter_agrees_with_python_predicate() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        family = Family(id=FAMILY, name="Home")
        other = Family(id=OTHER_FAMILY, name="Neighbours")
        food = Category(
            id=FOOD, family_id=FAMILY, name="Food", type=TransactionType.expense
        )
        transport = Category(
            id=TRANSPORT,
            family_id=FAMILY,
            name="Transport",
            type=TransactionType.expense,
        )
        session.add_all([family, other, food, transport])
        session.flush()

        rows = [
            _txn(date(2024, 12, 31)),
            _txn(date(2025, 1, 1)),
            _txn(date(2025, 1, 15), category_id=TRANSPORT),
            _txn(date(2025, 1, 20), type=TransactionType.income),
            _txn(date(2025, 1, 21), family_id=OTHER_FAMILY),
            _txn(date(2025, 1, 22), deleted_at=datetime(2025, 1, 23)),
            _txn(date(2025, 1, 31)),
            _txn(date(2025, 2, 1)),
        ]
        session.add_all(rows)
        session.commit()

        journal = TransactionJournal(session)
        for budget in (_budget(FOOD), _budget(None)):
            flt = TransactionFilter.for_budget(budget)
            from_sql = {t.id for t in journal.list_by_filter(flt)}
            in_python = {t.id for t in rows if flt.matches(t)}
            assert from_sql == in_python
            assert journal.total_by_filter(flt) == 1_000 * len(in_python)

        assert len({t.id for t in rows if matches(t, _budget(FOOD))}) == 2
        assert len({t.id for t in rows if matches(t, _budget(None))}) == 3
