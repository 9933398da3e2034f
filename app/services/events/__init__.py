"""
Работа с шиной событий: клиент, модели и фильтрация
"""

from .models import DigestEvent, EventBatch, EventSource, EventFilters, DataFilter
from .event_filter import EventFilter, EventStats
from .client import EventBusClient

__all__ = ['DigestEvent', 'EventBatch', 'EventSource', 'EventFilters', 'DataFilter', 'EventFilter', 'EventStats', 'EventBusClient']
