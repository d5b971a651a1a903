import uuid
from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import DuplicateThreshold, InvalidBudgetID, InvalidThreshold, NotFound
from models import Budget, Category, Family, Transaction, TransactionType
from schemas import BudgetIn, TransactionIn
from services import AlertService, BudgetService, TransactionService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def seed_budget(session: Session) -> tuple[Family, Category, Budget]:
    family = Family(name="Home")
    session.add(family)
    session.flush()
    food = Category(family_id=family.id, name="Food", type=TransactionType.expense)
    session.add(food)
    session.commit()
    budget = BudgetService(session).create(
        family.id,
        BudgetIn(
            name="Groceries",
            amount_cents=100_000,
            category_id=food.id,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 31),
        ),
    )
    return family, food, budget


def spend(session: Session, family: Family, food: Category, amount_cents: int) -> None:
    TransactionService(session, family.id).create(
        TransactionIn(
            date=date(2025, 1, 10),
            type=TransactionType.expense,
            amount_cents=amount_cents,
            category_id=food.id,
        )
    )


def test_thresholds_are_unique_per_budget() -> None:
    with make_session() as session:
        _, _, budget = seed_budget(session)
        alerts = AlertService(session)

        alert = alerts.create_alert(budget.id, 80)
        assert alert.is_triggered is False
        assert alert.triggered_at is None

        with pytest.raises(DuplicateThreshold):
            alerts.create_alert(budget.id, 80)

        assert alerts.create_alert(str(budget.id), 50).threshold_percentage == 50


@pytest.mark.parametrize("threshold", [0, 101, -5])
def test_threshold_must_be_a_percentage(threshold) -> None:
    with make_session() as session:
        _, _, budget = seed_budget(session)
        with pytest.raises(InvalidThreshold):
            AlertService(session).create_alert(budget.id, threshold)


def test_boundary_thresholds_are_accepted() -> None:
    with make_session() as session:
        _, _, budget = seed_budget(session)
        alerts = AlertService(session)
        alerts.create_alert(budget.id, 1)
        alerts.create_alert(budget.id, 100)
        assert [a.threshold_percentage for a in alerts.get_alerts(budget.id)] == [1, 100]


def test_create_alert_checks_budget() -> None:
    with make_session() as session:
        alerts = AlertService(session)
        with pytest.raises(InvalidBudgetID):
            alerts.create_alert("nope", 80)
        with pytest.raises(NotFound):
            alerts.create_alert(uuid.uuid4(), 80)


def test_alerts_listed_by_threshold() -> None:
    with make_session() as session:
        _, _, budget = seed_budget(session)
        alerts = AlertService(session)
        for threshold in (90, 50, 75):
            alerts.create_alert(budget.id, threshold)

        assert [a.threshold_percentage for a in alerts.get_alerts(budget.id)] == [
            50,
            75,
            90,
        ]
        assert alerts.get_alerts(uuid.uuid4()) == []


def test_delete_alert() -> None:
    with make_session() as session:
        _, _, budget = seed_budget(session)
        alerts = AlertService(session)
        alert_id = alerts.create_alert(budget.id, 80).id

        alerts.delete_alert(alert_id)
        assert alerts.get_alerts(budget.id) == []
        with pytest.raises(NotFound):
            alerts.delete_alert(alert_id)

        alerts.create_alert(budget.id, 80)


def test_evaluate_fires_each_alert_once() -> None:
    with make_session() as session:
        family, food, budget = seed_budget(session)
        alerts = AlertService(session)
        for threshold in (50, 80, 100):
            alerts.create_alert(budget.id, threshold)

        spend(session, family, food, 80_000)
        fired_at = datetime(2025, 1, 10, 18, 0)
        fired = alerts.evaluate_alerts(budget.id, now=fired_at)
        assert [a.threshold_percentage for a in fired] == [50, 80]
        assert all(a.triggered_at == fired_at for a in fired)

        assert alerts.evaluate_alerts(budget.id) == []

        spend(session, family, food, 20_000)
        assert [a.threshold_percentage for a in alerts.evaluate_alerts(budget.id)] == [
            100
        ]


def test_evaluate_keeps_triggered_alerts_when_usage_drops() -> None:
    with make_session() as session:
        family, food, budget = seed_budget(session)
        alerts = AlertService(session)
        alerts.create_alert(budget.id, 50)
        spend(session, family, food, 60_000)
        assert len(alerts.evaluate_alerts(budget.id)) == 1

        txns = TransactionService(session, family.id)
        for txn_id in session.scalars(select(Transaction.id)).all():
            txns.soft_delete(txn_id)
        session.refresh(budget)
        assert budget.spent_cents == 0

        assert alerts.evaluate_alerts(budget.id) == []
        assert alerts.get_alerts(budget.id)[0].is_triggered is True
