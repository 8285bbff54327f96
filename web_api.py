# web_api.py

import csv
import datetime
import io
import logging
from typing import Optional, List
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Header, status, Query
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, field_validator
from prometheus_client import Gauge, generate_latest, CONTENT_TYPE_LATEST

import config
from scheduler_logic import SchedulerCore
from shared.errors import ValidationError
from shared.models import MessageType, Repeat, MAX_POLL_OPTIONS

logger = logging.getLogger(__name__)

ACTIVE_TASKS = Gauge('channel_scheduler_active_tasks', 'Number of active scheduled messages')
SCHEDULED_JOBS = Gauge('channel_scheduler_jobs', 'Number of live scheduler jobs')


# === Модели данных ===
class PublishRequest(BaseModel):
    type: str = MessageType.CUSTOM
    channel: str
    title: Optional[str] = None
    text: Optional[str] = None
    poll_options: List[str] = []
    alert_channels: List[str] = []
    anonymous: bool = False

    @field_validator('type')
    @classmethod
    def validate_type(cls, v):
        if v not in MessageType.ALL:
            raise ValueError(f"Must be one of {', '.join(MessageType.ALL)}")
        return v

    @field_validator('poll_options')
    @classmethod
    def validate_options(cls, v):
        if len(v) > MAX_POLL_OPTIONS:
            raise ValueError(f"At most {MAX_POLL_OPTIONS} options")
        return v


class ScheduleRequest(PublishRequest):
    date: str
    time: str
    repeat: str = Repeat.NONE

    @field_validator('repeat')
    @classmethod
    def validate_repeat(cls, v):
        if v not in Repeat.ALL:
            raise ValueError(f"Must be one of {', '.join(Repeat.ALL)}")
        return v


# === Проверка секретов ===
def require_api_secret(x_secret: Optional[str]):
    if config.WEB_API_SECRET and x_secret != config.WEB_API_SECRET:
        raise HTTPException(status_code=403, detail="Invalid secret")


def require_admin_secret(x_admin_secret: Optional[str]):
    if config.ADMIN_SECRET and x_admin_secret != config.ADMIN_SECRET:
        raise HTTPException(status_code=403, detail="Admin access required")


def create_app(core: SchedulerCore) -> FastAPI:
    app = FastAPI(title="Channel Message Scheduler API")

    @app.get("/health", summary="Health check")
    async def health_check():
        """Проверяет работоспособность сервиса."""
        report = core.health_check()
        report["timestamp"] = datetime.datetime.now(datetime.timezone.utc).isoformat()
        if report.get("status") != "ok":
            return JSONResponse(report, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return JSONResponse(report)

    @app.get("/metrics", summary="Prometheus metrics")
    async def metrics():
        """Экспортирует метрики для Prometheus."""
        ACTIVE_TASKS.set(len(core.store.list_active()))
        SCHEDULED_JOBS.set(len(core.engine.job_ids()))
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/publish", summary="Publish message immediately")
    async def web_publish(request: PublishRequest, x_secret: str = Header(None)):
        """Публикует сообщение немедленно."""
        require_api_secret(x_secret)
        msg = core.build_message(request.model_dump())
        try:
            ok = await core.send_now(msg)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        if not ok:
            raise HTTPException(status_code=502, detail="Failed to send message")
        logger.info(f"Web publish: channel={msg.channel}, id={msg.id}")
        return {"ok": True, "id": msg.id}

    @app.post("/publish/{task_id}", summary="Deliver a scheduled message now")
    async def web_publish_existing(task_id: str, x_secret: str = Header(None)):
        require_api_secret(x_secret)
        try:
            ok = await core.publish_now(task_id)
        except ValidationError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"ok": ok, "id": task_id}

    @app.post("/schedule", summary="Schedule a message")
    async def web_schedule(request: ScheduleRequest, x_secret: str = Header(None)):
        require_api_secret(x_secret)
        msg = core.build_message(request.model_dump())
        try:
            await core.create(msg)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        next_time = core.engine.next_fire_time(msg.id)
        return {
            "ok": True,
            "id": msg.id,
            "next_run_at": next_time.isoformat() if next_time else None,
        }

    @app.get("/admin/tasks", summary="List scheduled messages")
    async def admin_tasks(
        channel: Optional[str] = Query(None),
        x_admin_secret: str = Header(None, alias="X-Admin-Secret")
    ):
        require_admin_secret(x_admin_secret)
        tasks = core.store.list_by_channel(channel) if channel else core.store.list_all()
        result = []
        for task in tasks:
            item = task.to_dict()
            next_time = core.engine.next_fire_time(task.id)
            item["next_run_at"] = next_time.isoformat() if next_time else None
            result.append(item)
        return {"tasks": result, "active_count": sum(1 for t in tasks if t.status == "active")}

    @app.post("/admin/delete/{task_id}", summary="Delete task")
    async def admin_delete_task(task_id: str, x_admin_secret: str = Header(None, alias="X-Admin-Secret")):
        """Удаляет задачу."""
        if config.ADMIN_SECRET and x_admin_secret != config.ADMIN_SECRET:
            logger.warning(f"Попытка удаления без прав: task_id={task_id}")
        require_admin_secret(x_admin_secret)
        existed = await core.delete(task_id)
        if not existed:
            raise HTTPException(status_code=404, detail="Task not found")
        logger.info(f"Задача {task_id} удалена через админку")
        return {"ok": True}

    @app.get("/admin/export.csv", summary="Export tasks to CSV")
    async def export_tasks_csv(x_admin_secret: str = Header(None, alias="X-Admin-Secret")):
        """Экспортирует задачи в CSV."""
        require_admin_secret(x_admin_secret)
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow([
            "ID", "Type", "Channel", "Title", "Text", "Date", f"Time ({config.TIMEZONE})",
            "Repeat", "Status", "Last sent", "Last error"
        ])
        for task in core.store.list_all():
            writer.writerow([
                task.id, task.type, task.channel, task.title or "", task.text or "",
                task.date, task.time, task.repeat, task.status,
                task.last_sent_at or "", task.last_error or ""
            ])

        output.seek(0)
        filename = f"tasks_export_{datetime.datetime.now(datetime.timezone.utc).strftime('%Y%m%d_%H%M%S')}.csv"
        return StreamingResponse(
            iter([output.getvalue()]),
            media_type="text/csv",
            headers={"Content-Disposition": f"attachment; filename={quote(filename)}"}
        )

    return app
