"""
Основной модуль приложения
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from app.config import settings
from app.core.digest_service import DigestService
from app.core.exceptions import DigestAlreadyRunningError, DigestNotFoundError
from app.models import get_session_factory, init_models
from app.repositories.digest_store import DigestStore
from app.scheduler.cron import schedule_to_cron
from app.scheduler.digest_scheduler import DigestScheduler
from app.services.email.sender import EmailSender
from app.services.events.client import EventBusClient

# Настройка логирования
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class RunRequest(BaseModel):
    triggeredBy: Optional[str] = None


class TestRunRequest(BaseModel):
    recipientEmail: Optional[str] = None
    triggeredBy: Optional[str] = None


class ScheduleRequest(BaseModel):
    cronExpression: Optional[str] = None
    schedule: Optional[Dict[str, Any]] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения"""
    logger.info("🗄️ Создаю таблицы базы данных...")
    await init_models()

    logger.info("🚀 Инициализирую сервисы...")
    store = DigestStore(get_session_factory())
    event_client = EventBusClient()
    email_sender = EmailSender(store)
    digest_service = DigestService(store, event_client, email_sender)

    scheduler = DigestScheduler(digest_service, store)
    await scheduler.initialize()

    # Сохраняем в app.state для доступа из обработчиков
    app.state.store = store
    app.state.event_client = event_client
    app.state.email_sender = email_sender
    app.state.scheduler = scheduler

    logger.info("✅ Приложение успешно запущено!")

    yield

    logger.info("🛑 Останавливаю приложение...")
    scheduler.stop()
    logger.info("✅ Приложение остановлено.")


app = FastAPI(
    title="Stream Digest API",
    description="Плановые email-дайджесты по событиям из шины событий",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _raise_http(e: Exception, action: str):
    if isinstance(e, DigestNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, DigestAlreadyRunningError):
        raise HTTPException(status_code=409, detail=str(e))
    logger.error(f"❌ {action}: {e}")
    raise HTTPException(status_code=500, detail=str(e) or e.__class__.__name__)


@app.get("/")
async def root():
    """Корневой эндпоинт"""
    return {
        "message": "Stream Digest API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health_check(request: Request):
    """Проверка здоровья сервиса"""
    database_ok = await request.app.state.store.ping()
    event_bus_ok = await request.app.state.event_client.test_connection()
    provider = request.app.state.email_sender.provider

    if not database_ok:
        raise HTTPException(status_code=503, detail="Database unavailable")

    return {
        "status": "healthy" if event_bus_ok else "degraded",
        "services": {
            "database": "connected",
            "eventBus": "connected" if event_bus_ok else "unavailable",
            "email": provider.get_info(),
            "scheduler": request.app.state.scheduler.get_status(),
        }
    }


@app.get("/scheduler/status")
async def scheduler_status(request: Request):
    """Таймеры дайджестов"""
    return request.app.state.scheduler.get_status()


@app.post("/digests/{digest_id}/run")
async def run_digest(digest_id: str, request: Request, body: Optional[RunRequest] = None):
    """Запустить дайджест вручную"""
    body = body or RunRequest()
    try:
        result = await request.app.state.scheduler.run_digest_now(digest_id, triggered_by=body.triggeredBy)
    except Exception as e:
        _raise_http(e, f"Ручной запуск дайджеста {digest_id} завершился ошибкой")
    return result.to_dict()


@app.post("/digests/{digest_id}/test")
async def test_digest(digest_id: str, request: Request, body: Optional[TestRunRequest] = None):
    """Тестовый запуск дайджеста (водяной знак не меняется)"""
    body = body or TestRunRequest()
    try:
        result = await request.app.state.scheduler.run_digest_test(
            digest_id,
            recipient=body.recipientEmail,
            triggered_by=body.triggeredBy,
        )
    except Exception as e:
        _raise_http(e, f"Тестовый запуск дайджеста {digest_id} завершился ошибкой")
    return result.to_dict()


@app.put("/digests/{digest_id}/schedule")
async def update_schedule(digest_id: str, request: Request, body: Optional[ScheduleRequest] = None):
    """
    Обновить таймер дайджеста.

    С cronExpression или schedule - сохранить новое расписание в дайджесте.
    Затем таймер приводится в соответствие с дайджестом: он остаётся только
    у активного и не приостановленного дайджеста.
    """
    scheduler: DigestScheduler = request.app.state.scheduler
    body = body or ScheduleRequest()
    cron_expression = None
    try:
        if body.cronExpression or body.schedule:
            cron_expression = body.cronExpression or schedule_to_cron(body.schedule)
            if not await request.app.state.store.update_digest_schedule(digest_id, cron_expression):
                raise DigestNotFoundError(digest_id)

        scheduled = await scheduler.sync_digest(digest_id)
    except Exception as e:
        _raise_http(e, f"Не удалось обновить расписание дайджеста {digest_id}")

    response = {"digestId": digest_id, "scheduled": scheduled}
    if cron_expression:
        response["cronExpression"] = cron_expression
    return response


@app.delete("/digests/{digest_id}/schedule")
async def delete_schedule(digest_id: str, request: Request):
    """Снять дайджест с расписания"""
    request.app.state.scheduler.unschedule_digest(digest_id)
    return {"digestId": digest_id, "scheduled": False}


@app.get("/runs/{run_id}/stats")
async def run_statistics(run_id: str, request: Request):
    """Статистика доставки писем запуска"""
    run = await request.app.state.store.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Запуск {run_id} не найден")

    stats = await request.app.state.email_sender.get_run_statistics(run_id)
    return {
        "runId": run.id,
        "digestId": run.digest_id,
        "status": run.status,
        "eventsCount": run.events_count,
        **stats,
    }


if __name__ == "__main__":
    import uvicorn

    logger.info("🚀 Запуск Stream Digest...")
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
