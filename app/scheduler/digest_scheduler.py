import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Any, Optional, Set

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.config import settings
from app.core.digest_service import DigestService, ProcessResult
from app.core.exceptions import DigestAlreadyRunningError, DigestNotFoundError
from app.models import RunType
from app.repositories.digest_store import DigestStore
from app.scheduler.cron import build_cron_trigger
from app.utils.activity import log_event

logger = logging.getLogger(__name__)


@dataclass
class ScheduledDigest:
    """Зарегистрированный таймер дайджеста"""
    job: Job
    cron_expression: str


class DigestScheduler:
    """
    Планировщик дайджестов: один таймер на дайджест.

    Создаётся один раз на процесс и передаётся тем, кому нужно
    (пере)планировать дайджесты.
    """

    def __init__(
        self,
        digest_service: DigestService,
        store: DigestStore,
        scheduler: Optional[AsyncIOScheduler] = None,
        timezone: Optional[str] = None,
    ):
        self.digest_service = digest_service
        self.store = store
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE
        self.scheduler = scheduler or AsyncIOScheduler(timezone=self.timezone)
        self._jobs: Dict[str, ScheduledDigest] = {}
        self._in_flight: Set[str] = set()

    @staticmethod
    def _job_id(digest_id: str) -> str:
        return f"digest-{digest_id}"

    async def initialize(self) -> int:
        """Загрузить активные дайджесты, поставить их на расписание и запустить планировщик"""
        logger.info("Запуск планировщика дайджестов...")

        digests = await self.store.list_active_digests()
        scheduled = 0
        for digest in digests:
            if digest.is_paused:
                logger.info(f"Дайджест {digest.id} приостановлен, не планирую")
                continue
            self.schedule_digest(digest.id, digest.schedule)
            scheduled += 1

        if not self.scheduler.running:
            self.scheduler.start()

        logger.info(f"Запланировано {scheduled} активных дайджестов")
        return scheduled

    def schedule_digest(self, digest_id: str, cron_expression: str):
        """Поставить дайджест на расписание (существующий таймер заменяется)"""
        if digest_id in self._jobs:
            self.unschedule_digest(digest_id)

        job = self.scheduler.add_job(
            self._run_scheduled_digest,
            build_cron_trigger(cron_expression, self.timezone),
            args=[digest_id],
            id=self._job_id(digest_id),
            name=f"Дайджест {digest_id}: {cron_expression}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=300,
        )
        self._jobs[digest_id] = ScheduledDigest(job=job, cron_expression=cron_expression)

        logger.info(f"✅ Дайджест {digest_id} запланирован: {cron_expression}")
        log_event('digest.scheduled', digestId=digest_id, cronExpression=cron_expression)

    def unschedule_digest(self, digest_id: str):
        """Снять дайджест с расписания; если таймера нет - ничего не делать"""
        entry = self._jobs.pop(digest_id, None)
        if entry is None:
            return

        try:
            self.scheduler.remove_job(entry.job.id)
        except JobLookupError:
            logger.debug(f"Джоб {entry.job.id} уже удалён из планировщика")

        logger.info(f"Дайджест {digest_id} снят с расписания")
        log_event('digest.unscheduled', digestId=digest_id)

    def reschedule_digest(self, digest_id: str, new_cron_expression: str):
        self.unschedule_digest(digest_id)
        self.schedule_digest(digest_id, new_cron_expression)

    async def sync_digest(self, digest_id: str) -> bool:
        """
        Привести таймер в соответствие с дайджестом после его изменения.

        Returns:
            True, если дайджест стоит на расписании
        """
        digest = await self.store.get_digest(digest_id)
        if digest is None:
            self.unschedule_digest(digest_id)
            raise DigestNotFoundError(digest_id)

        if digest.is_active and not digest.is_paused:
            self.schedule_digest(digest.id, digest.schedule)
            return True

        self.unschedule_digest(digest.id)
        return False

    @asynccontextmanager
    async def _digest_slot(self, digest_id: str):
        """Не даёт одному дайджесту выполняться дважды одновременно"""
        if digest_id in self._in_flight:
            raise DigestAlreadyRunningError(digest_id)
        self._in_flight.add(digest_id)
        try:
            yield
        finally:
            self._in_flight.discard(digest_id)

    async def _run_scheduled_digest(self, digest_id: str):
        """Срабатывание таймера. Ошибки только логируются."""
        logger.info(f"🕘 Запуск дайджеста {digest_id} по расписанию")
        try:
            async with self._digest_slot(digest_id):
                result = await self.digest_service.process_digest(digest_id, RunType.SCHEDULED)
            logger.info(f"Дайджест {digest_id} по расписанию завершён: {result.status}")
        except DigestAlreadyRunningError:
            logger.warning(f"Дайджест {digest_id} ещё выполняется, пропускаю срабатывание")
        except Exception as e:
            logger.error(f"❌ Ошибка при выполнении дайджеста {digest_id} по расписанию: {e}", exc_info=True)

    async def run_digest_now(self, digest_id: str, triggered_by: Optional[str] = None) -> ProcessResult:
        """
        Выполнить дайджест немедленно и дождаться результата.

        Raises:
            DigestNotFoundError: Дайджест не найден
            DigestAlreadyRunningError: Дайджест уже выполняется
            Exception: Ошибка выполнения
        """
        if await self.store.get_digest(digest_id) is None:
            raise DigestNotFoundError(digest_id)

        log_event('digest.triggered_manually', digestId=digest_id, triggeredBy=triggered_by)
        async with self._digest_slot(digest_id):
            result = await self.digest_service.process_digest(digest_id, RunType.MANUAL, triggered_by=triggered_by)

        logger.info(f"Дайджест {digest_id} выполнен вручную: {result.status}")
        return result

    async def run_digest_test(
        self,
        digest_id: str,
        recipient: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> ProcessResult:
        """Тестовый запуск: отправка на тестовый адрес, водяной знак не меняется"""
        if await self.store.get_digest(digest_id) is None:
            raise DigestNotFoundError(digest_id)

        async with self._digest_slot(digest_id):
            return await self.digest_service.process_digest(
                digest_id,
                RunType.TEST,
                triggered_by=triggered_by,
                test_recipient=recipient,
            )

    def is_running(self, digest_id: str) -> bool:
        return digest_id in self._in_flight

    def get_status(self) -> Dict[str, Any]:
        jobs = []
        for digest_id, entry in self._jobs.items():
            next_run_time = getattr(entry.job, 'next_run_time', None)
            jobs.append({
                'digestId': digest_id,
                'name': entry.job.name,
                'cron': entry.cron_expression,
                'nextRunTime': next_run_time.isoformat() if next_run_time else None,
                'inFlight': digest_id in self._in_flight,
            })
        return {'isRunning': len(self._jobs) > 0, 'jobs': jobs}

    def stop(self):
        """Остановить все таймеры"""
        logger.info("Остановка планировщика дайджестов...")
        for digest_id in list(self._jobs):
            self.unschedule_digest(digest_id)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Планировщик дайджестов остановлен")
