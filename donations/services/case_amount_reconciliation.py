from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import timezone
from typing import Callable, Generator
from uuid import UUID

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from donations.config import Settings, get_settings
from donations.database import SessionLocal
from donations.services.approval_reconciler import (
    ReconciliationError,
    ReconciliationReport,
    recompute_case_amounts,
)

logger = logging.getLogger(__name__)

JOB_ID = "case-amount-reconciliation"


class CaseAmountReconciliationEngine:
    """Periodically recompute every case's funded amount from its contributions."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        settings_provider: Callable[[], Settings] = get_settings,
    ) -> None:
        self._session_factory = session_factory
        self._settings_provider = settings_provider
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        settings = self._settings_provider()
        trigger = self._build_trigger(settings.amount_reconciliation_cron, settings.amount_reconciliation_timezone)
        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_once,
            trigger=trigger,
            id=JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.start()
        logger.info("Case amount reconciliation scheduled with '%s'", settings.amount_reconciliation_cron)

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

    def run_once(self, case_ids: list[UUID] | None = None) -> ReconciliationReport | None:
        logger.info("Starting case amount reconciliation")
        try:
            with self._session_scope() as session:
                return recompute_case_amounts(session, case_ids)
        except ReconciliationError:
            logger.exception("Case amount reconciliation failed")
            return None

    def _build_trigger(self, expression: str, tz_name: str | None) -> CronTrigger:
        tz = timezone.utc
        if tz_name:
            try:
                tz = ZoneInfo(tz_name)
            except ZoneInfoNotFoundError:
                logger.warning("Unknown timezone '%s' for amount reconciliation; defaulting to UTC", tz_name)
        return CronTrigger.from_crontab(expression, timezone=tz)

    @contextmanager
    def _session_scope(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        session.expire_on_commit = False
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


case_amount_reconciliation_engine = CaseAmountReconciliationEngine()
