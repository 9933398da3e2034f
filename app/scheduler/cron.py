"""
Преобразование расписания дайджеста в cron и cron в триггер APScheduler
"""

import logging
from typing import Dict, Any, List, Optional, Tuple

from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

DEFAULT_CRON = '0 9 * * *'
DEFAULT_TIME = (9, 0)

# В cron 0 и 7 - воскресенье, в APScheduler 3 день 0 - понедельник,
# поэтому дни недели передаём именами
_WEEKDAY_NAMES = ['sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat']


def _parse_time(value: Optional[str]) -> Tuple[int, int]:
    """Разобрать "HH:MM"; при ошибке - 09:00"""
    try:
        hour, minute = str(value or '09:00').split(':')[:2]
        hour, minute = int(hour), int(minute)
    except (ValueError, TypeError):
        logger.warning(f"Некорректное время расписания {value!r}, использую 09:00")
        return DEFAULT_TIME
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        logger.warning(f"Время расписания вне диапазона {value!r}, использую 09:00")
        return DEFAULT_TIME
    return hour, minute


def schedule_to_cron(schedule: Dict[str, Any]) -> str:
    """
    Преобразовать описание расписания в cron-выражение.

    hourly -> "0 * * * *", every_6_hours -> "0 */6 * * *",
    daily -> "MM HH * * *", weekly -> "MM HH * * d1,d2" (по умолчанию понедельник),
    monthly -> "MM HH day * *", custom -> сохранённое выражение как есть.
    """
    schedule_type = (schedule or {}).get('type')

    if schedule_type == 'hourly':
        return '0 * * * *'
    if schedule_type == 'every_6_hours':
        return '0 */6 * * *'
    if schedule_type == 'every_n_hours':
        try:
            every = int(schedule.get('everyHours') or 6)
        except (TypeError, ValueError):
            every = 6
        return f'0 */{every} * * *' if 1 <= every <= 23 else '0 */6 * * *'
    if schedule_type == 'daily':
        hour, minute = _parse_time(schedule.get('dailyTime'))
        return f'{minute} {hour} * * *'
    if schedule_type == 'weekly':
        days = schedule.get('weekDays') or [1]
        hour, minute = _parse_time(schedule.get('weeklyTime'))
        return f"{minute} {hour} * * {','.join(str(d) for d in days)}"
    if schedule_type == 'monthly':
        day = schedule.get('monthDay') or 1
        hour, minute = _parse_time(schedule.get('monthlyTime'))
        return f'{minute} {hour} {day} * *'
    if schedule_type == 'custom':
        return schedule.get('cronExpression') or DEFAULT_CRON

    logger.warning(f"Неизвестный тип расписания {schedule_type!r}, использую {DEFAULT_CRON}")
    return DEFAULT_CRON


def _weekday_token(token: str) -> List[str]:
    """Один элемент поля дня недели cron -> имена дней"""
    if token.isdigit():
        return [_WEEKDAY_NAMES[int(token) % 7]]

    if '-' in token and '/' not in token:
        start, end = token.split('-', 1)
        if start.isdigit() and end.isdigit():
            return [_WEEKDAY_NAMES[d % 7] for d in range(int(start), int(end) + 1)]

    if '/' in token:
        base, step = token.split('/', 1)
        if step.isdigit():
            if base == '*':
                start, end = 0, 6
            elif '-' in base:
                start, end = (int(p) for p in base.split('-', 1))
            else:
                start, end = int(base), 6
            return [_WEEKDAY_NAMES[d % 7] for d in range(start, end + 1, int(step))]

    # '*', '?' и имена дней APScheduler понимает сам
    return [token]


def convert_weekday_field(field: str) -> str:
    """Перевести поле дня недели из нумерации cron в имена дней"""
    if field in ('*', '?'):
        return '*'
    names: List[str] = []
    for token in field.split(','):
        for name in _weekday_token(token.strip().lower()):
            if name not in names:
                names.append(name)
    return ','.join(names)


def build_cron_trigger(expression: str, timezone: str = 'UTC') -> CronTrigger:
    """
    Построить CronTrigger из 5-польного cron-выражения.

    Некорректное выражение заменяется на DEFAULT_CRON с предупреждением.
    """
    try:
        minute, hour, day, month, day_of_week = expression.split()
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=convert_weekday_field(day_of_week),
            timezone=timezone,
        )
    except (ValueError, AttributeError, IndexError) as e:
        logger.warning(f"Некорректное cron-выражение {expression!r} ({e}), использую {DEFAULT_CRON}")
        minute, hour, day, month, day_of_week = DEFAULT_CRON.split()
        return CronTrigger(minute=minute, hour=hour, day=day, month=month, day_of_week=day_of_week, timezone=timezone)
