from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .db import Base, engine, SessionLocal, ensure_schema
from .artifacts import AudioStore
from .cleanup import expire_overdue_attempts, purge_orphaned_staging
from .errors import OralExamError
from .logging_config import configure_logging
from .notifier import Notifier
from .settings import settings
from .state_machine import ParticipationStateMachine
from .routers import auth
from .routers import realtime
from .routers import student
from .routers import supervisor
from .routers import system
import asyncio
import logging

logger = logging.getLogger(__name__)

app = FastAPI(title="Oral Exam API")
app.include_router(auth.router)
app.include_router(student.router)
app.include_router(supervisor.router)
app.include_router(system.router)
app.include_router(realtime.router)


def build_machine() -> ParticipationStateMachine:
	return ParticipationStateMachine(
		session_factory=SessionLocal,
		artifacts=AudioStore(settings.audio_upload_dir, max_bytes=settings.max_audio_bytes),
		notifier=Notifier(queue_size=settings.notifier_queue_size),
	)


app.state.machine = build_machine()


@app.exception_handler(OralExamError)
async def oral_exam_error_handler(request: Request, exc: OralExamError):
	return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/info")
def root():
	return {"status": "ok", "expiry_sweep_seconds": settings.expiry_sweep_seconds}


def _sweep_once(machine: ParticipationStateMachine) -> int:
	finalized = expire_overdue_attempts(machine)
	with machine.session_factory() as db:
		purge_orphaned_staging(db, machine.artifacts)
	return finalized


async def _expiry_watcher(interval: float):
	# Finalizes attempts whose window elapsed even when no client is polling
	while True:
		await asyncio.sleep(interval)
		try:
			await asyncio.to_thread(_sweep_once, app.state.machine)
		except Exception:
			logger.exception("Expiry sweep failed; retrying in %ss", interval)


@app.on_event("startup")
async def startup_event():
	configure_logging()
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
	# Apply lightweight dev migrations
	ensure_schema()
	with SessionLocal() as db:
		auth.ensure_seed_supervisor(db)
	# Attempts that expired while the server was down
	await asyncio.to_thread(_sweep_once, app.state.machine)
	if settings.expiry_sweep_seconds > 0:
		app.state.expiry_task = asyncio.create_task(_expiry_watcher(settings.expiry_sweep_seconds))


@app.on_event("shutdown")
async def shutdown_event():
	task = getattr(app.state, "expiry_task", None)
	if task is not None:
		task.cancel()
