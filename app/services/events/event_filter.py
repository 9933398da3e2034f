"""
Фильтрация, сортировка и группировка событий.

Все функции чистые: без ввода-вывода и без общего состояния. Ошибки в
отдельных событиях не прерывают обработку пачки - неразрешимый путь
считается отсутствующим значением.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from .models import DigestEvent, EventFilters, parse_timestamp

logger = logging.getLogger(__name__)

# Значение отсутствует (в отличие от явного None в данных)
MISSING = object()

_PATH_SPLIT = re.compile(r'[.\[\]]+')


def resolve_path(obj: Any, path: str) -> Any:
    """
    Достать вложенное значение по пути вида "file.name" или "sharedWith[0].email".

    Returns:
        Значение или MISSING, если путь не разрешается
    """
    if path.startswith('$.'):
        path = path[2:]

    current = obj
    for part in (p for p in _PATH_SPLIT.split(path) if p):
        if current is None or current is MISSING:
            return MISSING
        if part.isdigit() and isinstance(current, (list, tuple)):
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        elif isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        else:
            return MISSING
    return current


def _same(a: Any, b: Any) -> bool:
    """Строгое сравнение: True не равно 1"""
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def _is_absent(value: Any) -> bool:
    return value is MISSING or value is None


@dataclass
class EventStats:
    """Сводная статистика по пачке событий"""
    total: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    by_account: Dict[str, int] = field(default_factory=dict)
    by_application: Dict[str, int] = field(default_factory=dict)
    earliest: Optional[datetime] = None
    latest: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': self.total,
            'byType': dict(self.by_type),
            'byAccount': dict(self.by_account),
            'byApplication': dict(self.by_application),
            'timeRange': {
                'earliest': self.earliest.isoformat() if self.earliest else None,
                'latest': self.latest.isoformat() if self.latest else None,
            },
        }


class EventFilter:
    """Движок отбора событий для дайджеста"""

    @staticmethod
    def filter_events(
        events: List[DigestEvent],
        filters: Union[EventFilters, Dict[str, Any], None],
        now: Optional[datetime] = None,
    ) -> List[DigestEvent]:
        """
        Оставить события, удовлетворяющие всем заданным фильтрам.

        Пустые фильтры возвращают исходный список без изменений (тот же объект).

        Args:
            events: События из шины
            filters: EventFilters или JSON фильтров дайджеста
            now: Текущее время для maxAgeHours (по умолчанию - сейчас, UTC)
        """
        if filters is None:
            return events
        if isinstance(filters, dict):
            filters = EventFilters.from_dict(filters)
        if filters.is_empty():
            return events

        cutoff = None
        if filters.max_age_hours:
            now = now or datetime.now(timezone.utc)
            cutoff = now - timedelta(hours=filters.max_age_hours)

        return [e for e in events if EventFilter._matches(e, filters, cutoff)]

    @staticmethod
    def _matches(event: DigestEvent, filters: EventFilters, cutoff: Optional[datetime]) -> bool:
        if filters.account_ids and event.account_id not in filters.account_ids:
            return False

        if filters.event_types and event.event_type not in filters.event_types:
            return False

        if filters.source_applications and event.source.application not in filters.source_applications:
            return False

        if filters.source_environments and event.source.environment not in filters.source_environments:
            return False

        if filters.user_ids and (not event.user_id or event.user_id not in filters.user_ids):
            return False

        if cutoff is not None:
            occurred_at = event.occurred_at
            # Неразбираемая метка времени не отсекает событие
            if occurred_at is not None and occurred_at < cutoff:
                return False

        for data_filter in filters.data_filters or []:
            value = resolve_path(event.data, data_filter.path)
            expected = data_filter.value
            operator = data_filter.operator

            if operator == 'equals':
                if value is MISSING or not _same(value, expected):
                    return False
            elif operator == 'not_equals':
                if value is not MISSING and _same(value, expected):
                    return False
            elif operator == 'contains':
                if not isinstance(value, str) or str(expected) not in value:
                    return False
            elif operator == 'not_contains':
                if isinstance(value, str) and str(expected) in value:
                    return False
            elif operator == 'exists':
                if value is MISSING:
                    return False
            elif operator == 'not_exists':
                if value is not MISSING:
                    return False
            else:
                logger.debug(f"Неизвестный оператор фильтра {operator!r} для пути {data_filter.path!r}, пропускаю")

        return True

    @staticmethod
    def sort_events(events: List[DigestEvent], sort_by: str = 'timestamp', order: str = 'desc') -> List[DigestEvent]:
        """
        Отсортировать события (возвращает новый список).

        Сортировка стабильная: события с равными ключами сохраняют исходный
        порядок при любом направлении. События без значения ключа (например,
        с неразбираемой меткой времени) идут в конце при любом направлении.
        Если значения разных типов не сравниваются, они сравниваются как строки.
        """
        def key_of(event: DigestEvent) -> Any:
            if sort_by == 'timestamp':
                occurred_at = event.occurred_at
                return occurred_at.timestamp() if occurred_at else MISSING
            if sort_by == 'eventType':
                return event.event_type
            if sort_by == 'accountId':
                return event.account_id
            return resolve_path(event.to_dict(), sort_by)

        present = []
        absent = []
        for event in events:
            value = key_of(event)
            if _is_absent(value):
                absent.append(event)
            else:
                present.append((value, event))

        reverse = order != 'asc'
        try:
            ordered = sorted(present, key=lambda item: item[0], reverse=reverse)
        except TypeError:
            ordered = sorted(present, key=lambda item: str(item[0]), reverse=reverse)

        return [e for _, e in ordered] + absent

    @staticmethod
    def group_events(events: List[DigestEvent], group_by: str) -> Dict[str, List[DigestEvent]]:
        """Разбить события на группы по ключу; отсутствующие значения попадают в "unknown" """
        groups: Dict[str, List[DigestEvent]] = {}
        for event in events:
            key = EventFilter._group_key(event, group_by)
            groups.setdefault(key, []).append(event)
        return groups

    @staticmethod
    def _group_key(event: DigestEvent, group_by: str) -> str:
        if group_by == 'eventType':
            return event.event_type or 'unknown'
        if group_by == 'accountId':
            return event.account_id or 'unknown'
        if group_by == 'userId':
            return event.user_id or 'unknown'
        if group_by == 'source.application':
            return event.source.application or 'unknown'
        if group_by == 'source.environment':
            return event.source.environment or 'unknown'
        if group_by == 'date':
            occurred_at = event.occurred_at
            if occurred_at is None:
                return 'unknown'
            return occurred_at.astimezone(timezone.utc).date().isoformat()

        value = resolve_path(event.to_dict(), group_by)
        if value is MISSING or not value:
            return 'unknown'
        return str(value)

    @staticmethod
    def get_event_stats(events: List[DigestEvent]) -> EventStats:
        """Статистика по событиям за один проход"""
        stats = EventStats(total=len(events))

        for event in events:
            stats.by_type[event.event_type] = stats.by_type.get(event.event_type, 0) + 1
            stats.by_account[event.account_id] = stats.by_account.get(event.account_id, 0) + 1
            application = event.source.application
            stats.by_application[application] = stats.by_application.get(application, 0) + 1

            occurred_at = event.occurred_at
            if occurred_at is None:
                continue
            if stats.earliest is None or occurred_at < stats.earliest:
                stats.earliest = occurred_at
            if stats.latest is None or occurred_at > stats.latest:
                stats.latest = occurred_at

        return stats
