"""
HTTP-клиент шины событий
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, AsyncIterator

import httpx

from app.config import settings
from app.core.exceptions import EventBusError
from app.utils.activity import log_event
from .models import DigestEvent, EventBatch

logger = logging.getLogger(__name__)

# Системный пользователь, от имени которого публикуются события дайджестов
SYSTEM_USER_ID = '00000000-0000-0000-0000-000000000000'


def _iso(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()


class EventBusClient:
    """Клиент REST API шины событий"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_url: URL шины событий
            api_key: Bearer-токен
            timeout: Таймаут запросов, секунды
            page_size: Размер страницы при выборке событий
            max_pages: Максимум страниц за одну выборку
            http_client: Готовый httpx.AsyncClient (закрывает вызывающий)
        """
        self.base_url = (base_url or settings.EVENT_BUS_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else settings.EVENT_BUS_API_KEY
        self.timeout = timeout or settings.EVENT_BUS_TIMEOUT
        self.page_size = page_size if page_size and page_size > 0 else settings.EVENT_FETCH_LIMIT
        self.max_pages = max_pages or settings.EVENT_FETCH_MAX_PAGES
        self._http_client = http_client

        if not self.api_key:
            logger.warning("EVENT_BUS_API_KEY не задан, запросы к шине событий будут отклонены")
        logger.info(f"Клиент шины событий настроен: {self.base_url}")

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_key or ""}',
            'Content-Type': 'application/json',
        }

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    def _build_params(
        self,
        last_uid: Optional[str],
        since_timestamp_ms: int,
        account_id: Optional[str],
        event_types: Optional[List[str]],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            'since_timestamp': int(since_timestamp_ms),
            'limit': self.page_size,
        }
        if last_uid:
            params['since_uid'] = last_uid
        # 'default' - заглушка аккаунта, по ней не фильтруем
        if account_id and str(account_id).strip() and account_id != 'default':
            params['account_id'] = account_id
        else:
            logger.info(f"Пропускаю фильтр по аккаунту (значение: {account_id!r})")
        if event_types:
            params['event_types'] = ','.join(event_types)
        return params

    async def fetch_events_since(
        self,
        last_uid: Optional[str],
        since_timestamp_ms: int,
        account_id: Optional[str] = None,
        event_types: Optional[List[str]] = None,
    ) -> EventBatch:
        """
        Получить события после водяного знака.

        Повтор события last_uid в начале ответа здесь не убирается - это
        делает вызывающий код.

        Если после EVENT_FETCH_MAX_PAGES страниц шина сообщает о продолжении,
        возвращается то, что получено, с truncated=True.

        Raises:
            EventBusError: Сетевая ошибка или ответ не 2xx на любой из страниц
        """
        url = f"{self.base_url}/api/events"
        params = self._build_params(last_uid, since_timestamp_ms, account_id, event_types)

        logger.info(f"Запрашиваю события из шины: {url} (since_uid={last_uid}, since={_iso(since_timestamp_ms)})")

        try:
            async with self._client() as client:
                response = await client.get(url, params=params, headers=self._headers)
                if response.status_code != 200:
                    error_msg = f"Ошибка API шины событий: {response.status_code} - {response.text[:500]}"
                    logger.error(error_msg)
                    raise EventBusError(error_msg, status_code=response.status_code)

                data = response.json()
                events = EventBatch(DigestEvent.from_dict(e) for e in data.get('events') or [])

                cursor = data.get('cursor')
                has_more = data.get('hasMore', False)
                pages = 1

                while has_more and cursor and pages < self.max_pages:
                    logger.info(f"Запрашиваю следующую страницу событий ({pages + 1})")
                    next_response = await client.get(
                        url,
                        params={**params, 'cursor': cursor},
                        headers=self._headers,
                    )
                    if next_response.status_code != 200:
                        error_msg = (
                            f"Ошибка API шины событий на странице {pages + 1}: "
                            f"{next_response.status_code} - {next_response.text[:500]}"
                        )
                        logger.error(error_msg)
                        raise EventBusError(error_msg, status_code=next_response.status_code)
                    next_data = next_response.json()
                    events.extend(DigestEvent.from_dict(e) for e in next_data.get('events') or [])
                    cursor = next_data.get('cursor')
                    has_more = next_data.get('hasMore', False)
                    pages += 1

                truncated = bool(has_more and cursor)
                events.truncated = truncated
                if truncated:
                    logger.warning(f"Достигнут лимит пагинации ({self.max_pages} стр.), остальные события будут выбраны в следующий запуск")

        except httpx.HTTPError as e:
            logger.error(f"Сетевая ошибка при обращении к шине событий: {e}")
            raise EventBusError(f"Шина событий недоступна: {e}") from e
        except ValueError as e:
            logger.error(f"Некорректный ответ шины событий: {e}")
            raise EventBusError(f"Некорректный ответ шины событий: {e}") from e

        logger.info(f"Получено {len(events)} событий из шины ({pages} стр.)")
        log_event(
            'event_bus.events_fetched',
            count=len(events),
            pagesFetched=pages,
            truncated=events.truncated,
            lastUid=last_uid,
            sinceTimestamp=_iso(since_timestamp_ms),
        )
        return events

    async def fetch_event(self, uid: str) -> Optional[DigestEvent]:
        """Получить одно событие по uid (None, если не найдено)"""
        url = f"{self.base_url}/api/events/{uid}"
        try:
            async with self._client() as client:
                response = await client.get(url, headers=self._headers)
        except httpx.HTTPError as e:
            raise EventBusError(f"Шина событий недоступна: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise EventBusError(f"Ошибка API шины событий: {response.status_code}", status_code=response.status_code)
        return DigestEvent.from_dict(response.json())

    async def test_connection(self) -> bool:
        """Проверить доступность шины событий"""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/api/health", headers=self._headers)
            if response.status_code == 200:
                logger.info("Шина событий доступна")
                return True
            logger.warning(f"Проверка шины событий не прошла: {response.status_code}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Ошибка при проверке шины событий: {e}")
            return False

    async def emit_event(
        self,
        event_type: str,
        account_id: Optional[str],
        data: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Опубликовать событие в шине (например, digest.sent).

        Raises:
            EventBusError: Если шина отклонила событие
        """
        url = f"{self.base_url}/api/events"
        payload = {
            'eventId': uuid.uuid4().hex,
            'eventType': event_type,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'source': {
                'application': settings.SOURCE_APPLICATION,
                'version': '1.0.0',
                'environment': settings.APP_ENVIRONMENT,
            },
            # actor обязателен для API шины
            'actor': {
                'userId': SYSTEM_USER_ID,
                'accountId': account_id,
            },
            'payload': data,
            'metadata': metadata or {},
        }
        if account_id:
            payload['scope'] = {
                'accountId': account_id,
                'resourceType': 'digest',
                'resourceId': data.get('digestId'),
            }

        logger.info(f"Публикую событие в шину: {event_type}")
        try:
            async with self._client() as client:
                response = await client.post(url, json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise EventBusError(f"Шина событий недоступна: {e}") from e

        if response.status_code not in (200, 201, 202):
            error_msg = f"Не удалось опубликовать событие: {response.status_code} - {response.text[:500]}"
            logger.error(error_msg)
            raise EventBusError(error_msg, status_code=response.status_code)

        logger.debug(f"Событие {event_type} опубликовано")
