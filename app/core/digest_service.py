import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from app.config import settings
from app.core.exceptions import DigestNotFoundError, NoRecipientsError, TemplateNotFoundError
from app.models import Digest, DigestRun, RunStatus, RunType
from app.repositories.digest_store import DigestStore
from app.services.email.sender import EmailSender, SendResult
from app.services.events.client import EventBusClient
from app.services.events.event_filter import EventFilter
from app.services.events.models import DigestEvent, EventFilters
from app.utils.activity import log_event

logger = logging.getLogger(__name__)

SKIPPED = 'skipped'


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite возвращает naive datetime
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class ProcessResult:
    """Итог одного выполнения дайджеста"""
    digest_id: str
    status: str
    run_id: Optional[str] = None
    events_count: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    skip_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.status == SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'digestId': self.digest_id,
            'runId': self.run_id,
            'status': self.status,
            'eventsCount': self.events_count,
            'emailsSent': self.emails_sent,
            'emailsFailed': self.emails_failed,
            'skipReason': self.skip_reason,
        }


class DigestService:
    """
    Выполнение дайджеста от начала до конца: загрузка настроек, выборка и
    фильтрация событий, рассылка, запись результата запуска и сдвиг
    водяного знака.

    Одна попытка, без повторов. Ошибки после создания запуска
    записываются в запуск (status=failed) и пробрасываются дальше.
    """

    def __init__(
        self,
        store: DigestStore,
        event_client: EventBusClient,
        email_sender: EmailSender,
        clock: Optional[Callable[[], datetime]] = None,
        lookback_hours: Optional[int] = None,
    ):
        self.store = store
        self.event_client = event_client
        self.email_sender = email_sender
        self.clock = clock or _utc_now
        self.lookback_hours = lookback_hours or settings.DEFAULT_LOOKBACK_HOURS

    async def process_digest(
        self,
        digest_id: str,
        run_type: Union[RunType, str] = RunType.SCHEDULED,
        triggered_by: Optional[str] = None,
        test_recipient: Optional[str] = None,
    ) -> ProcessResult:
        """
        Выполнить дайджест

        Args:
            digest_id: ID дайджеста
            run_type: scheduled, manual или test
            triggered_by: Кто запустил (для ручных запусков)
            test_recipient: Адрес для тестового запуска

        Returns:
            ProcessResult (status=skipped для неактивного/приостановленного дайджеста)

        Raises:
            DigestNotFoundError: Дайджест не найден (запуск не создаётся)
            Exception: Любая ошибка выполнения после создания запуска
        """
        run_type = RunType(run_type)
        started = time.monotonic()
        now = self.clock()

        logger.info(f"Обработка дайджеста {digest_id} ({run_type.value})")

        digest = await self.store.get_digest(digest_id)
        if digest is None:
            logger.error(f"Дайджест {digest_id} не найден")
            raise DigestNotFoundError(digest_id)

        if not digest.is_active or digest.is_paused:
            reason = 'not_active' if not digest.is_active else 'paused'
            logger.info(f"Дайджест {digest_id} пропущен: {reason}")
            log_event('digest.job_skipped', digestId=digest_id, reason=reason, runType=run_type.value,
                      durationMs=self._elapsed_ms(started))
            return ProcessResult(digest_id=digest_id, status=SKIPPED, skip_reason=reason)

        run_id = uuid.uuid4().hex
        log_event('digest.job_started', digestId=digest_id, runId=run_id, runType=run_type.value,
                  triggeredBy=triggered_by)

        await self.store.create_run(DigestRun(
            id=run_id,
            digest_id=digest.id,
            run_type=run_type.value,
            status=RunStatus.PROCESSING.value,
            triggered_by=triggered_by,
            run_at=now,
        ))

        events: List[DigestEvent] = []
        recipients: List[str] = []
        send_result = SendResult()
        try:
            template = await self.store.get_template(digest.template_id)
            if template is None:
                raise TemplateNotFoundError(digest.id, digest.template_id)

            events, check_at = await self._select_events(digest, run_id, now)

            if events:
                events = EventFilter.sort_events(events, 'timestamp', 'desc')
                recipients = self._resolve_recipients(digest, run_type, test_recipient)
                send_result = await self.email_sender.send_digest(
                    run_id,
                    template,
                    events,
                    recipients,
                    {'id': digest.id, 'name': digest.name, 'account_id': digest.account_id, 'timezone': digest.timezone},
                )
                logger.info(f"Отправлено {send_result.sent} писем для дайджеста {digest.id}, ошибок: {send_result.failed}")

        except Exception as e:
            await self._fail_run(digest, run_id, run_type, e, started)
            raise

        if not events:
            return await self._complete_empty(digest, run_id, run_type, check_at, started)

        status = RunStatus.PARTIAL if send_result.failed > 0 else RunStatus.SUCCESS
        oldest, newest = self._uid_bounds(events)

        await self.store.update_run(
            run_id,
            status=status.value,
            events_count=len(events),
            events=[e.to_dict() for e in events],
            event_uid_start=oldest.uid,
            event_uid_end=newest.uid,
            emails_sent=send_result.sent,
            emails_failed=send_result.failed,
            completed_at=self.clock(),
            duration_ms=self._elapsed_ms(started),
        )

        # Тестовые запуски не трогают водяной знак
        if run_type != RunType.TEST:
            await self.store.update_digest_watermark(
                digest.id,
                last_check_at=check_at,
                last_event_uid=newest.uid,
                expected_version=digest.watermark_version,
            )

        await self._emit_completion(digest, run_id, events, recipients, send_result)

        log_event('digest.job_completed', digestId=digest.id, runId=run_id, runType=run_type.value,
                  eventsCount=len(events), recipientsCount=len(recipients), emailsSent=send_result.sent,
                  emailsFailed=send_result.failed, status=status.value, durationMs=self._elapsed_ms(started))
        logger.info(f"✅ Дайджест {digest.id} обработан: {status.value}, событий {len(events)}")

        return ProcessResult(
            digest_id=digest.id,
            run_id=run_id,
            status=status.value,
            events_count=len(events),
            emails_sent=send_result.sent,
            emails_failed=send_result.failed,
        )

    async def _select_events(self, digest: Digest, run_id: str, now: datetime) -> Tuple[List[DigestEvent], datetime]:
        """
        Получить события после водяного знака и отфильтровать их.

        Returns:
            Отфильтрованные события и новое значение last_check_at: now, а если
            выборка обрезана лимитом страниц - время самого нового полученного события
        """
        filters_data = digest.filters
        if isinstance(filters_data, str):
            filters_data = json.loads(filters_data or '{}')
        filters = EventFilters.from_dict(filters_data)

        # Первый запуск смотрит на lookback_hours назад
        since = _ensure_utc(digest.last_check_at) or now - timedelta(hours=self.lookback_hours)

        raw_events = await self.event_client.fetch_events_since(
            digest.last_event_uid,
            int(since.timestamp() * 1000),
            account_id=digest.account_id,
            event_types=filters.event_types,
        )
        truncated = getattr(raw_events, 'truncated', False)
        check_at = self._truncated_check_at(raw_events, since, now) if truncated else now

        # Шина может вернуть последнее обработанное событие первым
        if digest.last_event_uid and raw_events and raw_events[0].uid == digest.last_event_uid:
            raw_events = raw_events[1:]

        events = EventFilter.filter_events(raw_events, filters, now=now)

        logger.info(f"Получено {len(raw_events)} событий, после фильтрации {len(events)} (дайджест {digest.id})")
        log_event('digest.events_fetched', digestId=digest.id, runId=run_id, rawEventsCount=len(raw_events),
                  filteredEventsCount=len(events), lastCheckAt=since, lastEventUid=digest.last_event_uid,
                  truncated=truncated)
        return events, check_at

    @staticmethod
    def _truncated_check_at(raw_events: List[DigestEvent], since: datetime, now: datetime) -> datetime:
        """Для обрезанной выборки время проверки сдвигается только до самого нового полученного события"""
        timestamps = [e.occurred_at for e in raw_events if e.occurred_at is not None]
        check_at = min(max(timestamps), now) if timestamps else since
        logger.warning(f"Выборка событий обрезана, время проверки сдвигается до {check_at.isoformat()}")
        return check_at

    @staticmethod
    def _uid_bounds(events: List[DigestEvent]) -> Tuple[DigestEvent, DigestEvent]:
        """
        Самое старое и самое новое событие отсортированной (desc) пачки.

        События без разбираемой метки времени стоят в конце и границами не считаются,
        если в пачке есть события с меткой.
        """
        dated = [e for e in events if e.occurred_at is not None]
        if not dated:
            return events[-1], events[0]
        return dated[-1], dated[0]

    def _resolve_recipients(self, digest: Digest, run_type: RunType, test_recipient: Optional[str]) -> List[str]:
        if run_type == RunType.TEST:
            if test_recipient:
                recipients = [test_recipient]
            else:
                recipients = list(digest.test_recipients or [])
        else:
            recipients = list(digest.recipients or [])

        if not recipients:
            raise NoRecipientsError(f"У дайджеста {digest.id} нет получателей для запуска {run_type.value}")
        return recipients

    async def _complete_empty(
        self,
        digest: Digest,
        run_id: str,
        run_type: RunType,
        check_at: datetime,
        started: float,
    ) -> ProcessResult:
        """Нет событий: запуск успешен, сдвигаем только время проверки"""
        logger.info(f"Нет событий для дайджеста {digest.id}")

        await self.store.update_run(
            run_id,
            status=RunStatus.SUCCESS.value,
            events_count=0,
            emails_sent=0,
            completed_at=self.clock(),
            duration_ms=self._elapsed_ms(started),
        )

        if run_type != RunType.TEST:
            await self.store.update_digest_watermark(
                digest.id,
                last_check_at=check_at,
                expected_version=digest.watermark_version,
            )

        log_event('digest.no_events', digestId=digest.id, runId=run_id, durationMs=self._elapsed_ms(started))
        return ProcessResult(digest_id=digest.id, run_id=run_id, status=RunStatus.SUCCESS.value)

    async def _fail_run(self, digest: Digest, run_id: str, run_type: RunType, error: Exception, started: float):
        error_message = str(error) or error.__class__.__name__
        logger.error(f"❌ Ошибка при обработке дайджеста {digest.id} (запуск {run_id}): {error_message}")

        try:
            await self.store.update_run(
                run_id,
                status=RunStatus.FAILED.value,
                error=error_message,
                completed_at=self.clock(),
                duration_ms=self._elapsed_ms(started),
            )
        except Exception as e:
            logger.error(f"Не удалось записать ошибку в запуск {run_id}: {e}")

        log_event('digest.job_failed', digestId=digest.id, runId=run_id, runType=run_type.value,
                  error=error_message, errorType=error.__class__.__name__, durationMs=self._elapsed_ms(started))

    async def _emit_completion(
        self,
        digest: Digest,
        run_id: str,
        events: List[DigestEvent],
        recipients: List[str],
        send_result: SendResult,
    ):
        """Сообщить в шину об отправке дайджеста. Ошибка не меняет статус запуска."""
        try:
            await self.event_client.emit_event(
                'digest.sent',
                digest.account_id,
                {
                    'digestId': digest.id,
                    'digestName': digest.name,
                    'runId': run_id,
                    'eventsCount': len(events),
                    'recipientsCount': len(recipients),
                    'emailsSent': send_result.sent,
                },
            )
        except Exception as e:
            logger.error(f"Не удалось опубликовать digest.sent для запуска {run_id}: {e}")

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
