from importlib.metadata import PackageNotFoundError, version as package_version

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..artifacts import AUDIO_EXTENSIONS
from ..db import get_db
from ..models import Exam, ExamParticipant, ExamQuestion, ParticipantStatus, Student
from ..settings import settings
from ..state_machine import ParticipationStateMachine
from .auth import Principal, get_current_principal
from .common import get_machine

router = APIRouter(prefix="/system", tags=["system"])

PACKAGE_NAME = "oralexam"


@router.get("/health")
def health():
	return {"status": "ok"}


@router.get("/time")
def server_time(machine: ParticipationStateMachine = Depends(get_machine)):
	"""Authoritative server clock, used by clients to correct their own drift."""
	now = machine.now()
	return {"server_time": now.isoformat(), "timezone": "UTC"}


@router.get("/stats")
def stats(_: Principal = Depends(get_current_principal), db: Session = Depends(get_db)):
	counts = dict(
		db.query(ExamParticipant.status, func.count(ExamParticipant.id))
		.group_by(ExamParticipant.status)
		.all()
	)
	by_status = {s.value: counts.get(s, 0) for s in ParticipantStatus}
	total = sum(by_status.values())
	completed = by_status[ParticipantStatus.COMPLETED.value]
	return {
		"students": db.query(func.count(Student.id)).scalar(),
		"exams": db.query(func.count(Exam.id)).scalar(),
		"questions": db.query(func.count(ExamQuestion.id)).scalar(),
		"participants": total,
		"by_status": by_status,
		"completion_rate": round(completed / total * 100, 2) if total else 0,
	}


@router.get("/config")
def public_config():
	"""Limits a client needs before it starts recording."""
	return {
		"max_audio_bytes": settings.max_audio_bytes,
		"audio_extensions": list(AUDIO_EXTENSIONS),
		"default_preparation_seconds": settings.default_preparation_seconds,
		"default_recording_seconds": settings.default_recording_seconds,
		"expiry_grace_seconds": settings.expiry_grace_seconds,
	}


@router.get("/version")
def api_version():
	try:
		current = package_version(PACKAGE_NAME)
	except PackageNotFoundError:
		current = "0.1.0"
	return {"name": PACKAGE_NAME, "version": current}
