from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from concurrency import BudgetLocks, CancelScope, budget_locks, check_scope
from config import get_settings
from errors import (
    AmountBelowSpent,
    BudgetOverlap,
    DuplicateName,
    DuplicateThreshold,
    InvalidBudgetID,
    InvalidCategoryID,
    InvalidDateRange,
    InvalidFamilyID,
    InvalidID,
    NotFound,
)
from matching import TransactionFilter, covering_budget_clauses
from models import (
    Budget,
    BudgetAlert,
    Category,
    Family,
    Transaction,
    TransactionType,
)
from periods import Window, local_now, local_today, resolve_window
from schemas import (
    BudgetFilter,
    BudgetIn,
    BudgetStatus,
    BudgetUpdate,
    TransactionIn,
    UsageStat,
)
from usage import classify, pace, recommendations
from validation import (
    IdLike,
    parse_id,
    parse_optional_id,
    validate_budget_amount,
    validate_budget_name,
    validate_budget_period,
    validate_date_range,
    validate_threshold,
)

logger = logging.getLogger(__name__)


class TransactionJournal:
    """Read side of the transaction log, queried through ``TransactionFilter``."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_by_filter(self, flt: TransactionFilter) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(*flt.clauses())
            .order_by(Transaction.date.asc(), Transaction.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def total_by_filter(self, flt: TransactionFilter) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            *flt.clauses()
        )
        return int(self.session.execute(stmt).scalar_one() or 0)


class RecalculationService:
    def __init__(
        self,
        session: Session,
        *,
        locks: Optional[BudgetLocks] = None,
        lock_timeout: Optional[float] = None,
    ) -> None:
        self.session = session
        self.journal = TransactionJournal(session)
        self.locks = budget_locks if locks is None else locks
        if lock_timeout is None:
            lock_timeout = get_settings().lock_timeout_secs
        self.lock_timeout = lock_timeout

    def recalculate_spent(
        self, budget_id: IdLike, *, scope: Optional[CancelScope] = None
    ) -> int:
        """Overwrite ``spent`` with the sum of every matching transaction.

        Runs under the budget's lock and commits before releasing it, so
        concurrent recalculations of one budget cannot interleave their read
        and write. Any failure, cancellation included, rolls the session back
        and leaves the previous ``spent`` in place.
        """
        budget_id = parse_id(budget_id, InvalidID)
        check_scope(scope, "recalculate_spent")
        with self.locks.hold(budget_id, timeout=self.lock_timeout, scope=scope):
            try:
                budget = self.session.scalar(
                    select(Budget)
                    .where(Budget.id == budget_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                if budget is None:
                    raise NotFound(f"Budget {budget_id} not found", field="budget_id")
                previous = budget.spent_cents
                total = self.journal.total_by_filter(TransactionFilter.for_budget(budget))
                check_scope(scope, "recalculate_spent")
                budget.spent_cents = total
                budget.updated_at = datetime.utcnow()
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.warning(f"recalculate_spent_failed: budget_id={budget_id}")
                raise
        if previous != total:
            logger.info(
                f"recalculate_spent: budget_id={budget_id} "
                f"spent_cents={previous}->{total}"
            )
        return total

    def recalculate_many(
        self, budget_ids: Iterable[uuid.UUID], *, scope: Optional[CancelScope] = None
    ) -> dict[uuid.UUID, int]:
        results: dict[uuid.UUID, int] = {}
        # Sorted so two writers touching the same budgets take locks in order.
        for budget_id in sorted(set(budget_ids), key=str):
            results[budget_id] = self.recalculate_spent(budget_id, scope=scope)
        return results

    def find_budgets_affected_by_transaction(
        self,
        family_id: IdLike,
        category_id: IdLike,
        transaction_date: date,
        *,
        scope: Optional[CancelScope] = None,
    ) -> list[uuid.UUID]:
        family_id = parse_id(family_id, InvalidFamilyID)
        category_id = parse_id(category_id, InvalidCategoryID)
        check_scope(scope, "find_budgets_affected_by_transaction")
        stmt = (
            select(Budget.id)
            .where(*covering_budget_clauses(family_id, category_id, transaction_date))
            .order_by(Budget.start_date.asc(), Budget.name.asc())
        )
        return list(self.session.scalars(stmt).all())

    def recalculate_family(
        self, family_id: IdLike, *, scope: Optional[CancelScope] = None
    ) -> dict[uuid.UUID, int]:
        family_id = parse_id(family_id, InvalidFamilyID)
        ids = self.session.scalars(
            select(Budget.id).where(
                Budget.family_id == family_id, Budget.is_active.is_(True)
            )
        ).all()
        return self.recalculate_many(ids, scope=scope)

    def check_budget_limits(
        self,
        family_id: IdLike,
        category_id: IdLike,
        amount_cents: int,
        on: Optional[date] = None,
    ) -> list[Budget]:
        """Budgets a new expense of ``amount_cents`` would push over their limit.

        Reads live journal totals and never writes ``spent``.
        """
        on = on or local_today()
        ids = self.find_budgets_affected_by_transaction(family_id, category_id, on)
        if not ids:
            return []
        budgets = self.session.scalars(
            select(Budget).where(Budget.id.in_(ids)).order_by(Budget.name.asc())
        ).all()
        exceeded: list[Budget] = []
        for budget in budgets:
            spent = self.journal.total_by_filter(TransactionFilter.for_budget(budget))
            if spent + amount_cents > budget.amount_cents:
                exceeded.append(budget)
        return exceeded


class BudgetService:
    def __init__(
        self, session: Session, recalculator: Optional[RecalculationService] = None
    ) -> None:
        self.session = session
        self.recalculator = recalculator or RecalculationService(session)

    def _require_family(self, family_id: uuid.UUID) -> None:
        if self.session.get(Family, family_id) is None:
            raise NotFound("Family not found", field="family_id")

    def _require_expense_category(
        self, family_id: uuid.UUID, category_id: Optional[uuid.UUID]
    ) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.family_id != family_id:
            raise NotFound("Category not found", field="category_id")
        if category.type != TransactionType.expense:
            raise InvalidCategoryID("Budgets can only be set for expense categories")

    def _check_overlap(
        self,
        family_id: uuid.UUID,
        category_id: Optional[uuid.UUID],
        window: Window,
        exclude_id: Optional[uuid.UUID] = None,
    ) -> None:
        """Reject a window that overlaps an active budget with the same scope.

        Family-wide budgets only conflict with other family-wide budgets and
        category budgets only with budgets on the same category.
        """
        for existing in self.by_period(family_id, window.start, window.end):
            if existing.id == exclude_id or existing.category_id != category_id:
                continue
            if window.overlaps(Window(existing.start_date, existing.end_date)):
                raise BudgetOverlap(
                    f"Budget period overlaps with budget {existing.name!r}"
                )

    def create(
        self,
        family_id: IdLike,
        data: BudgetIn,
        *,
        scope: Optional[CancelScope] = None,
    ) -> Budget:
        family_id = parse_id(family_id, InvalidFamilyID)
        category_id = parse_optional_id(data.category_id, InvalidCategoryID)
        name = validate_budget_name(data.name)
        amount_cents = validate_budget_amount(data.amount_cents)
        period = validate_budget_period(data.period)
        window = resolve_window(period, data.start_date, data.end_date)
        validate_date_range(window.start, window.end)

        self._require_family(family_id)
        self._require_expense_category(family_id, category_id)
        self._check_overlap(family_id, category_id, window)

        budget = Budget(
            family_id=family_id,
            name=name,
            amount_cents=amount_cents,
            spent_cents=0,
            period=period,
            category_id=category_id,
            start_date=window.start,
            end_date=window.end,
            is_active=True,
        )
        self.session.add(budget)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateName(
                f"Budget {name!r} already exists for this period"
            ) from exc
        logger.info(f"budget_created: budget_id={budget.id} family_id={family_id}")

        self.recalculator.recalculate_spent(budget.id, scope=scope)
        self.session.refresh(budget)
        return budget

    def get(self, budget_id: IdLike, family_id: Optional[IdLike] = None) -> Budget:
        budget_id = parse_id(budget_id, InvalidBudgetID)
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.id == budget_id)
        )
        if family_id is not None:
            stmt = stmt.where(Budget.family_id == parse_id(family_id, InvalidFamilyID))
        budget = self.session.scalar(stmt)
        if not budget:
            raise NotFound("Budget not found", field="budget_id")
        return budget

    def update(
        self,
        budget_id: IdLike,
        data: BudgetUpdate,
        *,
        scope: Optional[CancelScope] = None,
    ) -> Budget:
        budget = self.get(budget_id)

        amount_cents = budget.amount_cents
        if data.amount_cents is not None:
            amount_cents = validate_budget_amount(data.amount_cents)
            # Compare against a fresh total, not whatever was cached.
            self.recalculator.recalculate_spent(budget.id, scope=scope)
            self.session.refresh(budget)
            if amount_cents < budget.spent_cents:
                raise AmountBelowSpent(
                    f"New amount {amount_cents} is below the {budget.spent_cents} "
                    "already spent"
                )

        name = budget.name if data.name is None else validate_budget_name(data.name)
        period = (
            budget.period if data.period is None else validate_budget_period(data.period)
        )
        if data.clear_category:
            category_id = None
        elif data.category_id is not None:
            category_id = parse_id(data.category_id, InvalidCategoryID)
        else:
            category_id = budget.category_id
        start = data.start_date or budget.start_date
        end = data.end_date or budget.end_date
        validate_date_range(start, end)
        self._require_expense_category(budget.family_id, category_id)

        scope_changed = (
            category_id != budget.category_id
            or start != budget.start_date
            or end != budget.end_date
            or (data.is_active is True and not budget.is_active)
        )
        will_be_active = budget.is_active if data.is_active is None else data.is_active
        if scope_changed and will_be_active:
            self._check_overlap(
                budget.family_id, category_id, Window(start, end), exclude_id=budget.id
            )

        budget.name = name
        budget.amount_cents = amount_cents
        budget.period = period
        budget.category_id = category_id
        budget.start_date = start
        budget.end_date = end
        if data.is_active is not None:
            budget.is_active = data.is_active
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateName(
                f"Budget {name!r} already exists for this period"
            ) from exc

        if scope_changed:
            self.recalculator.recalculate_spent(budget.id, scope=scope)
            self.session.refresh(budget)
        return budget

    def delete(self, budget_id: IdLike, family_id: IdLike) -> None:
        budget_id = parse_id(budget_id, InvalidBudgetID)
        family_id = parse_id(family_id, InvalidFamilyID)
        result = self.session.execute(
            update(Budget)
            .where(
                Budget.id == budget_id,
                Budget.family_id == family_id,
                Budget.is_active.is_(True),
            )
            .values(is_active=False, updated_at=datetime.utcnow())
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound("Budget not found", field="budget_id")
        self.session.commit()
        logger.info(f"budget_deactivated: budget_id={budget_id}")

    def list_by_family_and_category(
        self, family_id: IdLike, category_id: Optional[IdLike] = None
    ) -> list[Budget]:
        family_id = parse_id(family_id, InvalidFamilyID)
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.family_id == family_id, Budget.is_active.is_(True))
            .order_by(Budget.created_at.desc(), Budget.name.asc())
        )
        if category_id is not None:
            stmt = stmt.where(
                Budget.category_id == parse_id(category_id, InvalidCategoryID)
            )
        return list(self.session.scalars(stmt).all())

    def active_budgets(
        self, family_id: IdLike, as_of: Optional[date] = None
    ) -> list[Budget]:
        family_id = parse_id(family_id, InvalidFamilyID)
        as_of = as_of or local_today()
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.family_id == family_id,
                Budget.is_active.is_(True),
                Budget.start_date <= as_of,
                Budget.end_date >= as_of,
            )
            .order_by(Budget.start_date.desc(), Budget.name.asc())
        )
        return list(self.session.scalars(stmt).all())

    def by_period(self, family_id: IdLike, start: date, end: date) -> list[Budget]:
        family_id = parse_id(family_id, InvalidFamilyID)
        if end < start:
            raise InvalidDateRange("Range end must not be before range start")
        # Inclusive on both ends: covers budgets containing the range, inside
        # it, or straddling either edge.
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.family_id == family_id,
                Budget.is_active.is_(True),
                Budget.start_date <= end,
                Budget.end_date >= start,
            )
            .order_by(Budget.start_date.asc(), Budget.name.asc())
        )
        return list(self.session.scalars(stmt).all())

    def list(self, family_id: IdLike, filters: BudgetFilter) -> list[Budget]:
        family_id = parse_id(family_id, InvalidFamilyID)
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.family_id == family_id)
            .order_by(Budget.created_at.desc(), Budget.name.asc())
            .offset(filters.offset)
            .limit(filters.limit)
        )
        if filters.is_active is not None:
            stmt = stmt.where(Budget.is_active.is_(filters.is_active))
        if filters.period is not None:
            stmt = stmt.where(Budget.period == filters.period)
        if filters.category_id is not None:
            stmt = stmt.where(
                Budget.category_id == parse_id(filters.category_id, InvalidCategoryID)
            )
        return list(self.session.scalars(stmt).all())


class UsageService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.journal = TransactionJournal(session)

    def get_usage_stats(
        self,
        family_id: IdLike,
        *,
        now: Optional[datetime] = None,
        scope: Optional[CancelScope] = None,
    ) -> list[UsageStat]:
        """One stat per active, in-window budget, highest usage first.

        Spend comes straight from the journal, not the cached ``spent``.
        """
        family_id = parse_id(family_id, InvalidFamilyID)
        now = now or local_now()
        today = now.date()
        budgets = self.session.scalars(
            select(Budget)
            .options(joinedload(Budget.category))
            .where(
                Budget.family_id == family_id,
                Budget.is_active.is_(True),
                Budget.start_date <= today,
                Budget.end_date >= today,
            )
            .order_by(Budget.name.asc())
        ).all()

        stats: list[UsageStat] = []
        for budget in budgets:
            check_scope(scope, "get_usage_stats")
            spent = self.journal.total_by_filter(TransactionFilter.for_budget(budget))
            result = classify(budget.amount_cents, spent, budget.end_date, now)
            stats.append(
                UsageStat(
                    budget_id=budget.id,
                    budget_name=budget.name,
                    budget_amount_cents=budget.amount_cents,
                    spent_cents=spent,
                    remaining_cents=result.remaining_cents,
                    usage_percentage=result.usage_percentage,
                    period=budget.period,
                    start_date=budget.start_date,
                    end_date=budget.end_date,
                    days_remaining=result.days_remaining,
                    status=result.status,
                    category_name=budget.category.name if budget.category else None,
                )
            )
        stats.sort(key=lambda s: s.usage_percentage, reverse=True)
        return stats

    def budget_status(
        self, budget_id: IdLike, *, now: Optional[datetime] = None
    ) -> BudgetStatus:
        budget_id = parse_id(budget_id, InvalidBudgetID)
        budget = self.session.get(Budget, budget_id)
        if budget is None:
            raise NotFound("Budget not found", field="budget_id")
        now = now or local_now()
        spent = self.journal.total_by_filter(TransactionFilter.for_budget(budget))
        result = classify(budget.amount_cents, spent, budget.end_date, now)
        metrics = pace(
            budget.amount_cents, spent, budget.start_date, budget.end_date, now
        )
        return BudgetStatus(
            budget_id=budget.id,
            name=budget.name,
            total_amount_cents=budget.amount_cents,
            spent_cents=spent,
            remaining_cents=result.remaining_cents,
            usage_percentage=result.usage_percentage,
            status=result.status,
            is_over_budget=spent > budget.amount_cents,
            days_total=metrics.days_total,
            days_elapsed=metrics.days_elapsed,
            days_remaining=result.days_remaining,
            daily_budget_cents=metrics.daily_budget_cents,
            daily_spent_cents=metrics.daily_spent_cents,
            projected_overrun_cents=metrics.projected_overrun_cents,
            recommendations=recommendations(result),
            checked_at=now,
        )


class AlertService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_alert(self, budget_id: IdLike, threshold_percentage: int) -> BudgetAlert:
        budget_id = parse_id(budget_id, InvalidBudgetID)
        threshold = validate_threshold(threshold_percentage)
        if self.session.get(Budget, budget_id) is None:
            raise NotFound("Budget not found", field="budget_id")

        existing = self.session.scalar(
            select(BudgetAlert.id).where(
                BudgetAlert.budget_id == budget_id,
                BudgetAlert.threshold_percentage == threshold,
            )
        )
        if existing is not None:
            raise DuplicateThreshold(
                f"Alert with threshold {threshold}% already exists for this budget"
            )

        alert = BudgetAlert(
            budget_id=budget_id,
            threshold_percentage=threshold,
            is_triggered=False,
        )
        self.session.add(alert)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateThreshold(
                f"Alert with threshold {threshold}% already exists for this budget"
            ) from exc
        self.session.refresh(alert)
        return alert

    def get_alerts(self, budget_id: IdLike) -> list[BudgetAlert]:
        budget_id = parse_id(budget_id, InvalidBudgetID)
        stmt = (
            select(BudgetAlert)
            .where(BudgetAlert.budget_id == budget_id)
            .order_by(BudgetAlert.threshold_percentage.asc())
        )
        return list(self.session.scalars(stmt).all())

    def delete_alert(self, alert_id: IdLike) -> None:
        alert_id = parse_id(alert_id, InvalidID)
        alert = self.session.get(BudgetAlert, alert_id)
        if alert is None:
            raise NotFound("Alert not found", field="alert_id")
        self.session.delete(alert)
        self.session.commit()

    def evaluate_alerts(
        self, budget_id: IdLike, *, now: Optional[datetime] = None
    ) -> list[BudgetAlert]:
        """Fire every untriggered alert whose threshold the budget has reached.

        Reads the stored ``spent``, so run it after ``recalculate_spent``.
        Alerts fire once: a triggered alert is never cleared here, even if
        usage later drops below its threshold. Returns the alerts fired now.
        """
        budget_id = parse_id(budget_id, InvalidBudgetID)
        budget = self.session.get(Budget, budget_id)
        if budget is None:
            raise NotFound("Budget not found", field="budget_id")
        if budget.amount_cents <= 0:
            return []

        fired_at = now or datetime.utcnow()
        fired: list[BudgetAlert] = []
        for alert in self.get_alerts(budget_id):
            if alert.is_triggered:
                continue
            if budget.spent_cents * 100 >= alert.threshold_percentage * budget.amount_cents:
                alert.is_triggered = True
                alert.triggered_at = fired_at
                fired.append(alert)
        if fired:
            self.session.commit()
            logger.info(
                f"alerts_triggered: budget_id={budget_id} "
                f"thresholds={[a.threshold_percentage for a in fired]}"
            )
        return fired


class TransactionService:
    """Writes to the journal and keeps affected budgets' ``spent`` in step.

    Every write follows the same protocol: note the budgets covering the old
    category and date, commit the write, note the budgets covering the new
    category and date, then recalculate the union.
    """

    def __init__(
        self,
        session: Session,
        family_id: IdLike,
        recalculator: Optional[RecalculationService] = None,
    ) -> None:
        self.session = session
        self.family_id = parse_id(family_id, InvalidFamilyID)
        self.recalculator = recalculator or RecalculationService(session)

    def _affected(self, txn_type: TransactionType, category_id, on: date) -> set[uuid.UUID]:
        # Income never matches a budget, so it cannot affect one.
        if txn_type != TransactionType.expense:
            return set()
        return set(
            self.recalculator.find_budgets_affected_by_transaction(
                self.family_id, category_id, on
            )
        )

    def _category(self, category_id: IdLike, txn_type: TransactionType) -> Category:
        category_id = parse_id(category_id, InvalidCategoryID)
        category = self.session.get(Category, category_id)
        if not category or category.family_id != self.family_id:
            raise NotFound("Category not found", field="category_id")
        if category.type != txn_type:
            raise InvalidCategoryID(
                "Category type does not match the transaction type"
            )
        return category

    def get(self, transaction_id: IdLike, *, include_deleted: bool = False) -> Transaction:
        transaction_id = parse_id(transaction_id, InvalidID)
        stmt = select(Transaction).where(
            Transaction.family_id == self.family_id, Transaction.id == transaction_id
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found", field="transaction_id")
        return txn

    def create(
        self, data: TransactionIn, *, scope: Optional[CancelScope] = None
    ) -> Transaction:
        category = self._category(data.category_id, data.type)
        txn = Transaction(
            family_id=self.family_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=category.id,
            description=data.description,
        )
        self.session.add(txn)
        self.session.commit()

        affected = self._affected(txn.type, txn.category_id, txn.date)
        self.recalculator.recalculate_many(affected, scope=scope)
        self.session.refresh(txn)
        return txn

    def update(
        self,
        transaction_id: IdLike,
        data: TransactionIn,
        *,
        scope: Optional[CancelScope] = None,
    ) -> Transaction:
        txn = self.get(transaction_id)
        category = self._category(data.category_id, data.type)
        before = self._affected(txn.type, txn.category_id, txn.date)

        txn.date = data.date
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.category_id = category.id
        txn.description = data.description
        self.session.commit()

        after = self._affected(txn.type, txn.category_id, txn.date)
        self.recalculator.recalculate_many(before | after, scope=scope)
        self.session.refresh(txn)
        return txn

    def soft_delete(
        self, transaction_id: IdLike, *, scope: Optional[CancelScope] = None
    ) -> None:
        txn = self.get(transaction_id, include_deleted=True)
        if txn.deleted_at is not None:
            return
        before = self._affected(txn.type, txn.category_id, txn.date)
        txn.deleted_at = datetime.utcnow()
        self.session.commit()
        self.recalculator.recalculate_many(before, scope=scope)

    def restore(
        self, transaction_id: IdLike, *, scope: Optional[CancelScope] = None
    ) -> None:
        txn = self.get(transaction_id, include_deleted=True)
        if txn.deleted_at is None:
            return
        txn.deleted_at = None
        self.session.commit()
        after = self._affected(txn.type, txn.category_id, txn.date)
        self.recalculator.recalculate_many(after, scope=scope)
