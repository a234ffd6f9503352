"""Error taxonomy shared by the use cases and the API layer.

Every error a use case raises on purpose derives from ``LedgerError`` and
carries the status code the API layer answers with. ``ValidationError``,
``NotFound``, ``Unauthorized`` and ``Conflict`` are raised before any write
happens; ``StoreError`` wraps a failure of the store itself, after which the
surrounding atomic unit has already been rolled back.
"""

from typing import Optional


class LedgerError(ValueError):
    status_code = 400
    kind = "ledger_error"

    def __init__(self, message: str, *, kind: Optional[str] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(LedgerError):
    status_code = 400
    kind = "validation_error"


class NotFound(LedgerError):
    status_code = 404
    kind = "not_found"


class Unauthorized(LedgerError):
    status_code = 403
    kind = "unauthorized"


class Conflict(LedgerError):
    status_code = 409
    kind = "conflict"


class InsufficientBalance(Conflict):
    kind = "insufficient_balance"


class SameAccountTransfer(Conflict):
    kind = "same_account_transfer"


class AlreadyPaid(Conflict):
    kind = "already_paid"


class AlreadySold(Conflict):
    kind = "already_sold"


class InactiveSubscription(Conflict):
    kind = "inactive_subscription"


class SubscriptionNotDue(Conflict):
    kind = "subscription_not_due"


class CircularCategoryParent(Conflict):
    kind = "circular_category_parent"


class CategoryHasChildren(Conflict):
    kind = "category_has_children"


class ResourceInUse(Conflict):
    kind = "resource_in_use"


class DuplicateName(Conflict):
    kind = "duplicate_name"


class StoreError(RuntimeError):
    kind = "store_error"

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable

    @property
    def status_code(self) -> int:
        return 503 if self.retryable else 500
