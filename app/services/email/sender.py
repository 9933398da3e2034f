"""
Отправка писем дайджеста
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from app.config import settings
from app.models import EmailLog
from app.repositories.digest_store import DigestStore
from app.services.events.models import DigestEvent
from app.utils.activity import log_event
from .provider import BaseEmailProvider, EmailMessage, ProviderAuthError, ProviderError, ResendProvider, AUTH_ERROR_MESSAGE
from .renderer import RenderedEmail, TemplateRenderer

logger = logging.getLogger(__name__)

TEST_PREFIX = '[TEST]'
_TEST_PREFIX_RE = re.compile(r'^\[TEST\]\s*', re.IGNORECASE)


@dataclass
class SendResult:
    sent: int = 0
    failed: int = 0


class EmailSender:
    """Рендерит шаблон и рассылает письмо каждому получателю"""

    def __init__(
        self,
        store: DigestStore,
        provider: Optional[BaseEmailProvider] = None,
        renderer: Optional[TemplateRenderer] = None,
    ):
        self.store = store
        self.provider = provider or ResendProvider()
        self.renderer = renderer or TemplateRenderer()

    def _render(self, template: Any, events: List[DigestEvent], digest_info: Dict[str, Any]) -> RenderedEmail:
        context = self.renderer.build_context(
            events,
            digest_info.get('name', ''),
            digest_info.get('account_id'),
            timezone_name=digest_info.get('timezone'),
        )
        return self.renderer.render(template, context)

    async def send_digest(
        self,
        run_id: str,
        template: Any,
        events: List[DigestEvent],
        recipients: List[str],
        digest_info: Dict[str, Any],
    ) -> SendResult:
        """
        Отправить дайджест всем получателям.

        Шаблон рендерится один раз. Ошибка у одного получателя записывается
        в журнал и не мешает отправке остальным.

        Args:
            run_id: ID запуска (для журнала отправок)
            template: Шаблон дайджеста
            events: Отсортированные события
            recipients: Адреса получателей
            digest_info: id, name, account_id дайджеста

        Returns:
            Счётчики отправленных и неудачных писем
        """
        rendered = self._render(template, events, digest_info)
        result = SendResult()

        for recipient in recipients:
            email_log_id = uuid.uuid4().hex
            try:
                await self.store.create_email_log(EmailLog(
                    id=email_log_id,
                    digest_run_id=run_id,
                    recipient=recipient,
                    subject=rendered.subject,
                    status='pending',
                ))

                provider_id = await self.provider.send(EmailMessage(
                    from_email=settings.RESEND_FROM_EMAIL,
                    to=recipient,
                    subject=rendered.subject,
                    html=rendered.html,
                    text=rendered.text,
                    tags=[
                        {'name': 'digest_id', 'value': str(digest_info.get('id'))},
                        {'name': 'digest_run_id', 'value': run_id},
                        {'name': 'account_id', 'value': str(digest_info.get('account_id'))},
                    ],
                ))

                await self.store.update_email_log(
                    email_log_id,
                    provider_message_id=provider_id,
                    status='sent',
                    sent_at=datetime.now(timezone.utc),
                )
                result.sent += 1

                logger.info(f"Письмо отправлено {recipient} (дайджест {digest_info.get('id')})")
                log_event('email.sent', digestId=digest_info.get('id'), digestRunId=run_id,
                          recipient=recipient, providerId=provider_id)

            except Exception as e:
                result.failed += 1
                error_message = str(e) or e.__class__.__name__
                logger.error(f"❌ Не удалось отправить письмо {recipient}: {error_message}")
                await self._mark_failed(email_log_id, error_message)
                log_event('email.failed', digestId=digest_info.get('id'), digestRunId=run_id,
                          recipient=recipient, error=error_message, errorType=e.__class__.__name__)

        return result

    async def _mark_failed(self, email_log_id: str, error_message: str):
        try:
            await self.store.update_email_log(email_log_id, status='failed', error=error_message)
        except Exception as e:
            logger.error(f"Не удалось записать ошибку в журнал отправки {email_log_id}: {e}")

    async def send_test_email(
        self,
        template: Any,
        events: List[DigestEvent],
        recipient: str,
        digest_info: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Отправить тестовое письмо (без записи в журнал отправок)"""
        try:
            rendered = self._render(template, events, digest_info)
            subject = f"{TEST_PREFIX} {_TEST_PREFIX_RE.sub('', rendered.subject)}"

            provider_id = await self.provider.send(EmailMessage(
                from_email=settings.RESEND_FROM_EMAIL,
                to=recipient,
                subject=subject,
                html=rendered.html,
                text=rendered.text,
                tags=[
                    {'name': 'type', 'value': 'test'},
                    {'name': 'account_id', 'value': str(digest_info.get('account_id'))},
                ],
            ))
        except ProviderAuthError:
            logger.error(f"Не удалось отправить тестовое письмо {recipient}: {AUTH_ERROR_MESSAGE}")
            return {'success': False, 'error': AUTH_ERROR_MESSAGE}
        except ProviderError as e:
            logger.error(f"Не удалось отправить тестовое письмо {recipient}: {e}")
            return {'success': False, 'error': str(e)}

        logger.info(f"Тестовое письмо отправлено {recipient}")
        log_event('email.test_sent', recipient=recipient, providerId=provider_id)
        return {'success': True, 'providerId': provider_id, 'subject': subject}

    def preview_email(self, template: Any, events: List[DigestEvent], digest_info: Dict[str, Any]) -> RenderedEmail:
        """Отрендерить письмо без отправки"""
        return self._render(template, events, digest_info)

    async def update_email_status(
        self,
        provider_message_id: str,
        status: str,
        timestamp: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Обновить статус письма по уведомлению провайдера"""
        timestamp = timestamp or datetime.now(timezone.utc)
        fields: Dict[str, Any] = {'status': status, 'provider_status': status}

        if status == 'delivered':
            fields['delivered_at'] = timestamp
        elif status == 'opened':
            fields['opened_at'] = timestamp
            fields['open_count'] = EmailLog.open_count + 1
        elif status == 'clicked':
            fields['clicked_at'] = timestamp
            fields['click_count'] = EmailLog.click_count + 1
        elif status == 'bounced':
            fields['bounced_at'] = timestamp
            fields['error'] = (metadata or {}).get('message')

        updated = await self.store.update_email_status_by_provider_id(provider_message_id, **fields)
        if not updated:
            logger.warning(f"Письмо {provider_message_id} не найдено в журнале")
        else:
            logger.debug(f"Статус письма {provider_message_id}: {status}")
        return updated

    async def get_run_statistics(self, run_id: str) -> Dict[str, Any]:
        """Статистика доставки по запуску"""
        emails = await self.store.list_email_logs(run_id)
        total = len(emails)

        def count(status: str) -> int:
            return sum(1 for e in emails if e.status == status)

        return {
            'total': total,
            'sent': count('sent'),
            'delivered': count('delivered'),
            'opened': count('opened'),
            'clicked': count('clicked'),
            'bounced': count('bounced'),
            'failed': count('failed'),
            'openRate': (sum(1 for e in emails if e.opened_at) / total * 100) if total else 0,
            'clickRate': (sum(1 for e in emails if e.clicked_at) / total * 100) if total else 0,
        }
