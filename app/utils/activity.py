"""
Журнал событий активности (структурированные записи для внешнего сбора логов)
"""

import json
import logging
from datetime import datetime
from typing import Any

logger = logging.getLogger(__name__)
activity_logger = logging.getLogger("app.activity")


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def log_event(event: str, **fields: Any) -> None:
    """Записать событие активности. Никогда не бросает исключений."""
    try:
        payload = {"event": event, **fields}
        activity_logger.info(json.dumps(payload, default=_default, ensure_ascii=False))
    except Exception as e:
        logger.warning(f"Не удалось записать событие {event}: {e}")
