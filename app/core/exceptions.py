"""
Ошибки конвейера дайджестов
"""

from typing import Optional


class DigestError(Exception):
    """Базовая ошибка обработки дайджестов"""

    retryable = False


class DigestNotFoundError(DigestError):
    """Дайджест не найден"""

    def __init__(self, digest_id: str):
        super().__init__(f"Дайджест {digest_id} не найден")
        self.digest_id = digest_id


class TemplateNotFoundError(DigestError):
    """Шаблон дайджеста не найден"""

    def __init__(self, digest_id: str, template_id: Optional[str]):
        super().__init__(f"Шаблон {template_id} для дайджеста {digest_id} не найден")
        self.digest_id = digest_id
        self.template_id = template_id


class NoRecipientsError(DigestError):
    """Некому отправлять дайджест"""


class DigestAlreadyRunningError(DigestError):
    """Дайджест уже выполняется"""

    def __init__(self, digest_id: str):
        super().__init__(f"Дайджест {digest_id} уже выполняется")
        self.digest_id = digest_id


class RunStateError(DigestError):
    """Недопустимый переход статуса запуска"""


class WatermarkConflictError(DigestError):
    """Водяной знак дайджеста изменён параллельным запуском"""

    retryable = True

    def __init__(self, digest_id: str, expected_version: int):
        super().__init__(
            f"Водяной знак дайджеста {digest_id} уже изменён (ожидалась версия {expected_version})"
        )
        self.digest_id = digest_id
        self.expected_version = expected_version


class EventBusError(DigestError):
    """Ошибка обращения к шине событий"""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
