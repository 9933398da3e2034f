"""
Рендеринг писем дайджеста с помощью jinja2
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from jinja2 import Environment

from app.config import settings
from app.services.events.event_filter import EventFilter
from app.services.events.models import DigestEvent, parse_timestamp

logger = logging.getLogger(__name__)

TEMPLATE_CACHE_SIZE = 128


@dataclass
class RenderedEmail:
    subject: str
    html: str
    text: str


def _format_datetime(value: Any, fmt: str = '%d.%m.%Y %H:%M') -> str:
    """Фильтр шаблона: форматирование метки времени"""
    parsed = parse_timestamp(value)
    if parsed is None:
        return '' if value is None else str(value)
    return parsed.strftime(fmt)


class TemplateRenderer:
    """Рендерер шаблонов дайджеста (тема, HTML и текст)"""

    def __init__(self, cache_size: int = TEMPLATE_CACHE_SIZE):
        # HTML экранируем, тему и текст - нет
        self.html_env = Environment(autoescape=True)
        self.text_env = Environment(autoescape=False, trim_blocks=True, lstrip_blocks=True)
        for env in (self.html_env, self.text_env):
            env.filters['datetime'] = _format_datetime

        # Компиляция шаблонов кэшируется по исходнику, старые версии вытесняются
        self._html_template = lru_cache(maxsize=cache_size)(self.html_env.from_string)
        self._text_template = lru_cache(maxsize=cache_size)(self.text_env.from_string)

    def build_context(
        self,
        events: List[DigestEvent],
        digest_name: str,
        account_id: Optional[str],
        now: Optional[datetime] = None,
        timezone_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Собрать контекст шаблона"""
        groups = EventFilter.group_events(events, 'eventType')
        return {
            'events': [e.to_dict() for e in events],
            'eventsCount': len(events),
            'digest': {'name': digest_name, 'timezone': timezone_name or settings.DEFAULT_DIGEST_TIMEZONE},
            'now': now or datetime.now(timezone.utc),
            'accountId': account_id,
            'stats': EventFilter.get_event_stats(events).to_dict(),
            'groups': {key: [e.to_dict() for e in group] for key, group in groups.items()},
        }

    def render(self, template: Any, context: Dict[str, Any]) -> RenderedEmail:
        """
        Отрендерить письмо

        Args:
            template: Объект с полями subject_template, body_html_template, body_text_template
            context: Переменные шаблона

        Raises:
            jinja2.TemplateError: При ошибке в шаблоне
        """
        try:
            subject = self._text_template(template.subject_template).render(**context)
            html = self._html_template(template.body_html_template).render(**context)
            text_source = template.body_text_template or ''
            text = self._text_template(text_source).render(**context) if text_source else ''
        except Exception as e:
            logger.error(f"Ошибка при рендеринге шаблона {getattr(template, 'id', '?')}: {e}")
            raise

        # Тема письма - одна строка
        subject = ' '.join(subject.split())
        return RenderedEmail(subject=subject, html=html, text=text.strip())
