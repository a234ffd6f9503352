import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from crypto_prices import CryptoPriceClient
from database import session_scope
from errors import StoreError
from recurrence import SubscriptionBiller
from services import CryptoPriceRefresher


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_billing(self, source: str = "manual") -> None:
        logger.info(f"subscription_billing_run: source={source}")
        try:
            with session_scope() as session:
                processed = SubscriptionBiller(session).process_due()
        except StoreError as exc:
            logger.error(f"subscription_billing_run failed: source={source} error={exc}")
            return
        logger.info(
            f"subscription_billing_run: source={source} processed={len(processed)}"
        )

    def _run_price_refresh(self, source: str = "manual") -> None:
        logger.info(f"crypto_price_refresh_run: source={source}")
        try:
            with session_scope() as session:
                updated = CryptoPriceRefresher(session).refresh()
        except (RuntimeError, ValueError) as exc:
            logger.error(f"crypto_price_refresh_run failed: source={source} error={exc}")
            return
        logger.info(f"crypto_price_refresh_run: source={source} updated={updated}")

    def start(self) -> None:
        self._run_billing("startup")

        trigger = CronTrigger(hour=0, minute=5)
        self.scheduler.add_job(
            self._run_billing,
            trigger,
            args=["daily_00:05"],
            id="subscriptions_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_billing,
            trigger,
            args=["hourly_safety_net"],
            id="subscriptions_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        if CryptoPriceClient().configured:
            trigger = IntervalTrigger(minutes=self.settings.crypto_refresh_minutes)
            self.scheduler.add_job(
                self._run_price_refresh,
                trigger,
                args=["interval"],
                id="crypto_prices",
                replace_existing=True,
                misfire_grace_time=300,
            )
        else:
            logger.info("Crypto price refresh disabled: no API key configured")

        self.scheduler.start()
        logger.info("Scheduler started with daily 00:05 billing and hourly safety net")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
