"""
Модели данных шины событий
"""

from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Разобрать метку времени события (ISO-строка, datetime или миллисекунды). None, если не удалось."""
    if value is None:
        return None
    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except (ValueError, TypeError, OverflowError, OSError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class EventSource:
    """Источник события"""
    application: str = ''
    environment: str = ''
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {'application': self.application, 'environment': self.environment}
        if self.version:
            result['version'] = self.version
        return result


@dataclass
class DigestEvent:
    """Доменное событие из шины"""
    uid: str
    timestamp: str
    event_type: str
    account_id: str
    source: EventSource = field(default_factory=EventSource)
    user_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DigestEvent':
        """
        Создать событие из ответа API.

        Поддерживает и новый формат шины (eventId, payload, actor/scope),
        и старый (uid, data, accountId).
        """
        scope = data.get('scope') or {}
        actor = data.get('actor') or {}
        source = data.get('source') or {}
        return cls(
            uid=data.get('eventId') or data.get('uid'),
            timestamp=data.get('timestamp'),
            event_type=data.get('eventType'),
            account_id=scope.get('accountId') or actor.get('accountId') or data.get('accountId'),
            user_id=actor.get('userId') or data.get('userId'),
            source=EventSource(
                application=source.get('application') or '',
                environment=source.get('environment') or '',
                version=source.get('version'),
            ),
            data=data.get('payload') or data.get('data') or {},
            metadata=data.get('metadata') or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Преобразовать в словарь (для снимка запуска и шаблонов)"""
        result = {
            'uid': self.uid,
            'timestamp': self.timestamp,
            'eventType': self.event_type,
            'accountId': self.account_id,
            'source': self.source.to_dict(),
            'data': self.data,
            'metadata': self.metadata,
        }
        if self.user_id:
            result['userId'] = self.user_id
        return result

    @property
    def occurred_at(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)


@dataclass
class DataFilter:
    """Условие на поле полезной нагрузки события"""
    path: str
    operator: str
    value: Any = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DataFilter':
        return cls(path=data.get('path', ''), operator=data.get('operator', ''), value=data.get('value'))


@dataclass
class EventFilters:
    """Набор фильтров дайджеста (все условия объединяются через И)"""
    account_ids: Optional[List[str]] = None
    event_types: Optional[List[str]] = None
    source_applications: Optional[List[str]] = None
    source_environments: Optional[List[str]] = None
    user_ids: Optional[List[str]] = None
    max_age_hours: Optional[float] = None
    data_filters: Optional[List[DataFilter]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EventFilters':
        """Создать фильтры из JSON, сохранённого в дайджесте"""
        data = data or {}
        return cls(
            account_ids=data.get('accountIds'),
            event_types=data.get('eventTypes'),
            source_applications=data.get('sourceApplications'),
            source_environments=data.get('sourceEnvironments'),
            user_ids=data.get('userIds'),
            max_age_hours=data.get('maxAgeHours'),
            data_filters=[DataFilter.from_dict(f) for f in data.get('dataFilters') or []] or None,
        )

    def is_empty(self) -> bool:
        return not any([
            self.account_ids,
            self.event_types,
            self.source_applications,
            self.source_environments,
            self.user_ids,
            self.max_age_hours,
            self.data_filters,
        ])


class EventBatch(list):
    """События одной выборки из шины. truncated - выборка упёрлась в лимит страниц."""

    def __init__(self, events=(), truncated: bool = False):
        super().__init__(events)
        self.truncated = truncated
