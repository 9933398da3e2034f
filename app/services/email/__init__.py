"""
Рендеринг и отправка писем дайджеста
"""

from .provider import (
    BaseEmailProvider, ResendProvider, EmailMessage,
    ProviderError, ProviderAuthError, ProviderRateLimitError, ProviderDeliveryError,
)
from .renderer import TemplateRenderer, RenderedEmail
from .sender import EmailSender, SendResult

__all__ = [
    'BaseEmailProvider', 'ResendProvider', 'EmailMessage',
    'ProviderError', 'ProviderAuthError', 'ProviderRateLimitError', 'ProviderDeliveryError',
    'TemplateRenderer', 'RenderedEmail', 'EmailSender', 'SendResult',
]
