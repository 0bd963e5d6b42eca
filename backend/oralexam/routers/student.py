"""
Student exam endpoints
======================

The request/response half of the participation protocol. Every read of an
attempt first runs the expiry check, so a student polling an attempt whose
window has elapsed sees it completed even if their upload never arrived.

- GET  /student/profile
- POST /student/test-microphone
- GET  /student/exams
- GET  /student/exam/{participant_id}
- POST /student/exam/{participant_id}/draw-question
- POST /student/exam/{participant_id}/start
- POST /student/exam/{participant_id}/begin-recording
- POST /student/exam/{participant_id}/audio-chunk
- POST /student/exam/{participant_id}/submit
- GET  /student/exam/{participant_id}/time-remaining
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import InvalidArtifact, StudentNotFound
from ..models import Student
from ..participants import exam_to_dict, list_for_student, ParticipantSnapshot
from ..settings import settings
from ..state_machine import ParticipationStateMachine
from ..timing import compute_phase
from .auth import Principal, require_student
from .common import get_machine, owned_participant, question_view, read_limited, read_upload

router = APIRouter(prefix="/student", tags=["student"])
logger = logging.getLogger(__name__)


class StartRequest(BaseModel):
	skip_preparation: bool = Field(default=False, description="Begin recording immediately with the full recording window")


def _state_payload(machine: ParticipationStateMachine, participant_id: int) -> Dict[str, Any]:
	state = machine.describe(participant_id)
	data = state.to_dict()
	data["question"] = question_view(state.participant)
	return data


@router.get("/profile")
def profile(principal: Principal = Depends(require_student), db: Session = Depends(get_db)):
	student = db.get(Student, principal.id)
	if student is None:
		raise StudentNotFound(principal.id)
	return {
		"id": student.id,
		"student_code": student.student_code,
		"full_name": student.full_name,
		"created_at": student.created_at.isoformat(),
	}


@router.post("/test-microphone")
def test_microphone(audio: UploadFile = File(...), principal: Principal = Depends(require_student),
		machine: ParticipationStateMachine = Depends(get_machine)):
	"""Check a sample recording against the upload rules; nothing is kept."""
	data = read_limited(audio, machine.artifacts.max_bytes)
	filename = audio.filename or "sample.webm"
	try:
		machine.artifacts.validate(data, filename)
	except InvalidArtifact:
		logger.info("Microphone test of student %s rejected (%d bytes)", principal.id, len(data))
		raise
	logger.info("Microphone test of student %s received %d bytes", principal.id, len(data))
	return {"ok": True, "filename": filename, "size": len(data), "content_type": audio.content_type}


@router.get("/exams")
def my_exams(principal: Principal = Depends(require_student), db: Session = Depends(get_db),
		machine: ParticipationStateMachine = Depends(get_machine)):
	now = machine.now()
	items: List[Dict[str, Any]] = []
	for row, exam in list_for_student(db, principal.id):
		snapshot = ParticipantSnapshot.from_row(row)
		if snapshot.status.value == "in_progress":
			snapshot = machine.auto_expire_check(row.id, grace_seconds=settings.expiry_grace_seconds)
		item = snapshot.to_dict()
		item.pop("artifact_ref", None)
		item["exam"] = exam_to_dict(exam)
		item.update(compute_phase(exam, snapshot, now).to_dict())
		items.append(item)
	return {"exams": items}


@router.get("/exam/{participant_id}")
def get_attempt(participant_id: int, principal: Principal = Depends(require_student),
		machine: ParticipationStateMachine = Depends(get_machine)):
	owned_participant(machine, participant_id, principal.id)
	machine.auto_expire_check(participant_id, grace_seconds=settings.expiry_grace_seconds)
	return _state_payload(machine, participant_id)


@router.post("/exam/{participant_id}/draw-question")
def draw_question(participant_id: int, principal: Principal = Depends(require_student),
		machine: ParticipationStateMachine = Depends(get_machine)):
	owned_participant(machine, participant_id, principal.id)
	snapshot = machine.draw_question(participant_id)
	return {
		"participant_id": snapshot.id,
		"status": snapshot.status.value,
		"question": question_view(snapshot),
	}


@router.post("/exam/{participant_id}/start")
def start_attempt(participant_id: int, req: Optional[StartRequest] = None,
		principal: Principal = Depends(require_student),
		machine: ParticipationStateMachine = Depends(get_machine)):
	owned_participant(machine, participant_id, principal.id)
	machine.start(participant_id, skip_preparation=bool(req and req.skip_preparation))
	return _state_payload(machine, participant_id)


@router.post("/exam/{participant_id}/begin-recording")
def begin_recording(participant_id: int, principal: Principal = Depends(require_student),
		machine: ParticipationStateMachine = Depends(get_machine)):
	owned_participant(machine, participant_id, principal.id)
	machine.begin_recording(participant_id)
	return _state_payload(machine, participant_id)


@router.post("/exam/{participant_id}/audio-chunk")
def upload_chunk(participant_id: int, chunk: UploadFile = File(...),
		principal: Principal = Depends(require_student),
		machine: ParticipationStateMachine = Depends(get_machine)):
	owned_participant(machine, participant_id, principal.id)
	staged = machine.stage_chunk(participant_id, read_limited(chunk, machine.artifacts.max_bytes))
	return {"participant_id": participant_id, "staged_bytes": staged}


@router.post("/exam/{participant_id}/submit")
def submit_attempt(participant_id: int, audio: Optional[UploadFile] = File(default=None),
		principal: Principal = Depends(require_student),
		machine: ParticipationStateMachine = Depends(get_machine)):
	owned_participant(machine, participant_id, principal.id)
	outcome = machine.submit_attempt(participant_id, read_upload(audio, machine.artifacts.max_bytes))
	return outcome.to_dict()


@router.get("/exam/{participant_id}/time-remaining")
def time_remaining(participant_id: int, principal: Principal = Depends(require_student),
		machine: ParticipationStateMachine = Depends(get_machine)):
	owned_participant(machine, participant_id, principal.id)
	machine.auto_expire_check(participant_id, grace_seconds=settings.expiry_grace_seconds)
	state = machine.describe(participant_id)
	return {
		"participant_id": participant_id,
		"status": state.participant.status.value,
		"server_time": state.server_time.isoformat(),
		**state.phase.to_dict(),
	}
