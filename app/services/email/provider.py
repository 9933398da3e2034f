"""
Провайдеры доставки писем
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

import resend
from resend.exceptions import ResendError

from app.config import settings

logger = logging.getLogger(__name__)

AUTH_ERROR_MESSAGE = (
    "Ключ API Resend недействителен или не задан. Проверьте переменную окружения RESEND_API_KEY."
)


class ProviderError(Exception):
    """Ошибка доставки письма провайдером"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    """Ключ API провайдера недействителен или отсутствует"""

    def __init__(self, message: str = AUTH_ERROR_MESSAGE, status_code: Optional[int] = None):
        super().__init__(message, status_code)


class ProviderRateLimitError(ProviderError):
    """Провайдер ограничил частоту запросов"""


class ProviderDeliveryError(ProviderError):
    """Прочие ошибки отправки"""


@dataclass
class EmailMessage:
    """Письмо для отправки одному получателю"""
    from_email: str
    to: str
    subject: str
    html: str
    text: Optional[str] = None
    tags: List[Dict[str, str]] = field(default_factory=list)


def classify_provider_error(status_code: Optional[int], message: str) -> ProviderError:
    """Превратить ответ провайдера в типизированную ошибку"""
    if status_code in (401, 403):
        return ProviderAuthError(status_code=status_code)
    if status_code == 429:
        return ProviderRateLimitError(message or "Превышен лимит запросов к провайдеру", status_code)
    return ProviderDeliveryError(message or "Ошибка при отправке письма", status_code)


class BaseEmailProvider(ABC):
    """Базовый класс для провайдеров почты"""

    def __init__(self, name: str, config: Dict[str, Any]):
        self.name = name
        self.config = config
        logger.info(f"Инициализирован почтовый провайдер: {name}")

    @abstractmethod
    async def send(self, message: EmailMessage) -> str:
        """
        Отправить письмо

        Returns:
            ID письма у провайдера

        Raises:
            ProviderAuthError, ProviderRateLimitError, ProviderDeliveryError
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        pass

    def get_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.__class__.__name__,
            "available": self.is_available(),
            "config": {k: v for k, v in self.config.items() if k != 'api_key'}
        }


class ResendProvider(BaseEmailProvider):
    """Отправка через Resend"""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {
            'api_key': settings.RESEND_API_KEY,
            'from_email': settings.RESEND_FROM_EMAIL,
        }
        super().__init__("resend", config)
        self.api_key = config.get('api_key')
        self.from_email = config.get('from_email') or settings.RESEND_FROM_EMAIL

        if not self.api_key:
            logger.warning("RESEND_API_KEY не задан, отправка писем будет завершаться ошибкой")

    def is_available(self) -> bool:
        return bool(self.api_key)

    def _send_sync(self, params: Dict[str, Any]) -> Any:
        resend.api_key = self.api_key
        return resend.Emails.send(params)

    async def send(self, message: EmailMessage) -> str:
        if not self.api_key:
            raise ProviderAuthError()

        params: Dict[str, Any] = {
            "from": message.from_email or self.from_email,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            params["text"] = message.text
        if message.tags:
            params["tags"] = message.tags

        try:
            # SDK синхронный - уводим в поток, чтобы не блокировать цикл событий
            response = await asyncio.to_thread(self._send_sync, params)
        except ResendError as e:
            status_code = getattr(e, 'code', None)
            try:
                status_code = int(status_code) if status_code is not None else None
            except (TypeError, ValueError):
                status_code = None
            raise classify_provider_error(status_code, str(getattr(e, 'message', None) or e)) from e

        email_id = response.get('id') if isinstance(response, dict) else getattr(response, 'id', None)
        if not email_id:
            raise ProviderDeliveryError(f"Провайдер вернул некорректный ответ: {response}")
        return email_id
