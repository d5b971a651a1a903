from typing import Optional


class BudgetError(ValueError):
    """Base for every validation and lookup failure raised by the budget engine.

    ``field`` names the offending input so callers can report it back without
    parsing the message.
    """

    default_field: Optional[str] = None

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field or self.default_field


class InvalidID(BudgetError):
    default_field = "id"


class InvalidFamilyID(InvalidID):
    default_field = "family_id"


class InvalidCategoryID(InvalidID):
    default_field = "category_id"


class InvalidBudgetID(InvalidID):
    default_field = "budget_id"


class InvalidAmount(BudgetError):
    default_field = "amount_cents"


class InvalidPeriod(BudgetError):
    default_field = "period"


class InvalidName(BudgetError):
    default_field = "name"


class InvalidDateRange(BudgetError):
    default_field = "end_date"


class InvalidThreshold(BudgetError):
    default_field = "threshold_percentage"


class DuplicateThreshold(BudgetError):
    default_field = "threshold_percentage"


class DuplicateName(BudgetError):
    default_field = "name"


class BudgetOverlap(BudgetError):
    default_field = "start_date"


class AmountBelowSpent(BudgetError):
    default_field = "amount_cents"


class NotFound(BudgetError):
    pass


class OperationCancelled(RuntimeError):
    pass
