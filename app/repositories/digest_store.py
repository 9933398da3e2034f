"""
Хранилище дайджестов, запусков и журнала отправок
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.exceptions import RunStateError, WatermarkConflictError
from app.models import Digest, DigestRun, DigestTemplate, EmailLog, RunStatus, RUN_TRANSITIONS

logger = logging.getLogger(__name__)


class DigestStore:
    """
    Доступ к таблицам дайджестов.

    Каждый метод работает в собственной сессии и фиксирует изменения сразу:
    все записи - одиночные обновления строк по id.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def ping(self) -> bool:
        """Проверить соединение с БД"""
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"БД недоступна: {e}")
            return False

    # Дайджесты

    async def get_digest(self, digest_id: str) -> Optional[Digest]:
        async with self.session_factory() as session:
            return await session.get(Digest, digest_id)

    async def list_active_digests(self) -> List[Digest]:
        async with self.session_factory() as session:
            result = await session.execute(select(Digest).where(Digest.is_active.is_(True)))
            return list(result.scalars().all())

    async def get_template(self, template_id: Optional[str]) -> Optional[DigestTemplate]:
        if not template_id:
            return None
        async with self.session_factory() as session:
            return await session.get(DigestTemplate, template_id)

    async def update_digest_schedule(self, digest_id: str, cron_expression: str) -> bool:
        """Сохранить cron-выражение дайджеста. False, если дайджест не найден."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(Digest)
                .where(Digest.id == digest_id)
                .values(schedule=cron_expression, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount > 0

    async def update_digest_watermark(
        self,
        digest_id: str,
        last_check_at: datetime,
        last_event_uid: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> int:
        """
        Сдвинуть водяной знак дайджеста.

        Args:
            digest_id: ID дайджеста
            last_check_at: Время проверки
            last_event_uid: Новый uid последнего события (None - не менять)
            expected_version: Версия водяного знака, прочитанная при загрузке

        Returns:
            Новая версия водяного знака

        Raises:
            WatermarkConflictError: Водяной знак уже сдвинут другим запуском
        """
        values: Dict[str, Any] = {
            'last_check_at': last_check_at,
            'updated_at': datetime.now(timezone.utc),
            'watermark_version': Digest.watermark_version + 1,
        }
        if last_event_uid is not None:
            values['last_event_uid'] = last_event_uid

        stmt = update(Digest).where(Digest.id == digest_id)
        if expected_version is not None:
            stmt = stmt.where(Digest.watermark_version == expected_version)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                await session.rollback()
                if expected_version is not None:
                    raise WatermarkConflictError(digest_id, expected_version)
                logger.warning(f"Дайджест {digest_id} не найден при обновлении водяного знака")
                return 0
            await session.commit()
            new_version = await session.scalar(select(Digest.watermark_version).where(Digest.id == digest_id))

        logger.info(f"Водяной знак дайджеста {digest_id} обновлён (uid={last_event_uid}, версия {new_version})")
        return new_version

    # Запуски

    async def create_run(self, run: DigestRun) -> DigestRun:
        async with self.session_factory() as session:
            session.add(run)
            await session.commit()
        return run

    async def get_run(self, run_id: str) -> Optional[DigestRun]:
        async with self.session_factory() as session:
            return await session.get(DigestRun, run_id)

    async def update_run(self, run_id: str, **fields: Any) -> DigestRun:
        """
        Обновить запуск.

        Raises:
            RunStateError: Запуск не найден, уже завершён или переход статуса недопустим
        """
        async with self.session_factory() as session:
            run = await session.get(DigestRun, run_id, with_for_update=True)
            if run is None:
                raise RunStateError(f"Запуск {run_id} не найден")

            current = RunStatus(run.status)
            if current.is_terminal:
                raise RunStateError(f"Запуск {run_id} уже завершён со статусом {current.value}")

            new_status = fields.get('status')
            if new_status is not None:
                new_status = RunStatus(new_status)
                if new_status != current and new_status not in RUN_TRANSITIONS[current]:
                    raise RunStateError(f"Недопустимый переход запуска {run_id}: {current.value} -> {new_status.value}")
                fields['status'] = new_status.value

            for key, value in fields.items():
                setattr(run, key, value)
            await session.commit()
            return run

    async def list_runs(self, digest_id: str, limit: int = 10) -> List[DigestRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DigestRun)
                .where(DigestRun.digest_id == digest_id)
                .order_by(DigestRun.run_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # Журнал отправок

    async def create_email_log(self, email_log: EmailLog) -> EmailLog:
        async with self.session_factory() as session:
            session.add(email_log)
            await session.commit()
        return email_log

    async def update_email_log(self, email_log_id: str, **fields: Any) -> None:
        async with self.session_factory() as session:
            await session.execute(update(EmailLog).where(EmailLog.id == email_log_id).values(**fields))
            await session.commit()

    async def list_email_logs(self, digest_run_id: str) -> List[EmailLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(EmailLog).where(EmailLog.digest_run_id == digest_run_id).order_by(EmailLog.created_at)
            )
            return list(result.scalars().all())

    async def get_email_log_by_provider_id(self, provider_message_id: str) -> Optional[EmailLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(EmailLog).where(EmailLog.provider_message_id == provider_message_id)
            )
            return result.scalars().first()

    async def update_email_status_by_provider_id(self, provider_message_id: str, **fields: Any) -> bool:
        """Обновить запись журнала по ID письма у провайдера. False, если запись не найдена."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmailLog).where(EmailLog.provider_message_id == provider_message_id).values(**fields)
            )
            await session.commit()
            return result.rowcount > 0
