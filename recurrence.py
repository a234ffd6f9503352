import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from errors import LedgerError, StoreError, SubscriptionNotDue
from models import Subscription, SubscriptionFrequency, SubscriptionStatus

logger = logging.getLogger(__name__)

WEEKS_PER_MONTH = 4.33


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, desired_day: Optional[int] = None) -> date:
    """Shift by whole calendar months, clamping to the last day of short months."""
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = desired_day or base.day
    return date(year, month, min(day, days_in_month(year, month)))


def calculate_next_billing_date(
    current: date,
    frequency: SubscriptionFrequency,
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Next billing date after ``current``.

    Month based frequencies keep the day of month given by ``anchor_day``
    (defaulting to the current day) and clamp it to the end of shorter
    months: Jan 31 -> Feb 29 -> Mar 31 for an anchor of 31 in 2024.
    """
    if frequency == SubscriptionFrequency.weekly:
        return current + timedelta(days=7)
    if frequency == SubscriptionFrequency.monthly:
        return add_months(current, 1, desired_day=anchor_day)
    if frequency == SubscriptionFrequency.quarterly:
        return add_months(current, 3, desired_day=anchor_day)
    if frequency == SubscriptionFrequency.yearly:
        return add_months(current, 12, desired_day=anchor_day)
    raise ValueError(f"Unsupported frequency: {frequency}")


def normalize_to_monthly(amount_cents: int, frequency: SubscriptionFrequency) -> float:
    if frequency == SubscriptionFrequency.weekly:
        return amount_cents * WEEKS_PER_MONTH
    if frequency == SubscriptionFrequency.monthly:
        return float(amount_cents)
    if frequency == SubscriptionFrequency.quarterly:
        return amount_cents / 3
    if frequency == SubscriptionFrequency.yearly:
        return amount_cents / 12
    return float(amount_cents)


class SubscriptionBiller:
    """Bills every active subscription that is due, across all owners.

    Each subscription is processed in its own atomic unit; one failing
    subscription is logged and skipped without affecting the others.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def due_subscriptions(
        self, as_of: date, user_id: Optional[str] = None
    ) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.active,
                Subscription.next_billing_date <= as_of,
            )
            .order_by(Subscription.next_billing_date, Subscription.id)
        )
        if user_id is not None:
            stmt = stmt.where(Subscription.user_id == user_id)
        return list(self.session.scalars(stmt).all())

    def process_due(
        self, as_of: Optional[date] = None, user_id: Optional[str] = None
    ) -> list[Subscription]:
        from services import SubscriptionService

        as_of = as_of or local_today()
        due = [(sub.id, sub.user_id) for sub in self.due_subscriptions(as_of, user_id)]
        processed: list[Subscription] = []
        for subscription_id, user_id in due:
            service = SubscriptionService(self.session, user_id)
            try:
                processed.append(service.process(subscription_id, as_of=as_of))
            except SubscriptionNotDue:
                logger.info(
                    f"subscription_process_skipped: id={subscription_id} "
                    f"user={user_id} already billed"
                )
            except (LedgerError, StoreError) as exc:
                logger.warning(
                    f"subscription_process_failed: id={subscription_id} "
                    f"user={user_id} error={exc}"
                )
            except Exception:
                logger.exception(
                    f"subscription_process_failed: id={subscription_id} user={user_id}"
                )
        logger.info(
            f"subscription_process_due: as_of={as_of} due={len(due)} "
            f"processed={len(processed)}"
        )
        return processed
