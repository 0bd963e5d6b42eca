from __future__ import annotations

import logging
import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import DuplicateRecord, ExamInUse, OralExamError, StudentInUse, StudentNotFound
from ..models import AuthSession, Exam, ExamParticipant, ExamQuestion, ParticipantStatus, Student
from ..participants import exam_to_dict, get_exam_row, monitoring_data
from ..questions import (
	add_question, add_questions, delete_question, get_question, list_questions, question_to_dict, question_usage, update_question,
)
from ..settings import settings
from ..state_machine import ParticipationStateMachine
from .auth import Principal, ROLE_STUDENT, hash_password, require_supervisor
from .common import get_machine

router = APIRouter(prefix="/supervisor", tags=["supervisor"])
logger = logging.getLogger(__name__)

STARTED = (ParticipantStatus.IN_PROGRESS, ParticipantStatus.COMPLETED)


class StudentCreate(BaseModel):
	student_code: str = Field(min_length=1, max_length=64)
	full_name: str = Field(min_length=1, max_length=256)
	password: str = Field(min_length=6)


class StudentUpdate(BaseModel):
	student_code: Optional[str] = Field(default=None, min_length=1, max_length=64)
	full_name: Optional[str] = Field(default=None, min_length=1, max_length=256)
	password: Optional[str] = Field(default=None, min_length=6)


class ExamCreate(BaseModel):
	name: str = Field(min_length=1, max_length=256)
	preparation_seconds: Optional[int] = Field(default=None, ge=0, le=3600)
	recording_seconds: Optional[int] = Field(default=None, ge=1, le=3600)


class ExamUpdate(BaseModel):
	name: Optional[str] = Field(default=None, min_length=1, max_length=256)
	preparation_seconds: Optional[int] = Field(default=None, ge=0, le=3600)
	recording_seconds: Optional[int] = Field(default=None, ge=1, le=3600)


class AssignRequest(BaseModel):
	student_ids: List[int] = Field(min_length=1)


class QuestionCreate(BaseModel):
	code: str = Field(min_length=1, max_length=64)
	content_ref: str = Field(min_length=1, max_length=1024)
	active: bool = True


class QuestionBatch(BaseModel):
	questions: List[QuestionCreate] = Field(min_length=1)


class QuestionUpdate(BaseModel):
	code: Optional[str] = Field(default=None, min_length=1, max_length=64)
	content_ref: Optional[str] = Field(default=None, min_length=1, max_length=1024)
	active: Optional[bool] = None


def _student_dict(row: Student) -> dict:
	return {"id": row.id, "student_code": row.student_code, "full_name": row.full_name}


# ----------------------------------------------------------------------
# Students and exams
# ----------------------------------------------------------------------

@router.post("/students", status_code=201)
def create_student(req: StudentCreate, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	code = req.student_code.strip()
	if db.query(Student).filter(Student.student_code == code).first():
		raise DuplicateRecord(f"Student code {code} already exists")
	row = Student(student_code=code, full_name=req.full_name.strip(), password_hash=hash_password(req.password))
	db.add(row)
	db.commit()
	db.refresh(row)
	return _student_dict(row)


@router.get("/students")
def list_students(_: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	rows = db.query(Student).order_by(Student.full_name.asc()).all()
	return {"students": [_student_dict(r) for r in rows]}


def _get_student(db: Session, student_id: int) -> Student:
	row = db.get(Student, student_id)
	if row is None:
		raise StudentNotFound(student_id)
	return row


def _revoke_student_sessions(db: Session, student_id: int) -> int:
	return (
		db.query(AuthSession)
		.filter(AuthSession.subject == str(student_id), AuthSession.role == ROLE_STUDENT)
		.delete(synchronize_session=False)
	)


@router.put("/students/{student_id}")
def update_student(student_id: int, req: StudentUpdate, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	row = _get_student(db, student_id)
	if req.student_code is not None:
		code = req.student_code.strip()
		clash = db.query(Student).filter(Student.student_code == code, Student.id != student_id).first()
		if clash:
			raise DuplicateRecord(f"Student code {code} already exists")
		row.student_code = code
	if req.full_name is not None:
		row.full_name = req.full_name.strip()
	if req.password is not None:
		row.password_hash = hash_password(req.password)
	db.add(row)
	db.commit()
	db.refresh(row)
	return _student_dict(row)


@router.delete("/students/{student_id}")
def delete_student(student_id: int, principal: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	"""Remove a student who never started an exam, along with their pending assignments."""
	row = _get_student(db, student_id)
	attempts = (
		db.query(ExamParticipant)
		.filter(ExamParticipant.student_id == student_id)
		.with_for_update()
		.all()
	)
	if any(p.status in STARTED for p in attempts):
		db.rollback()
		raise StudentInUse(student_id)
	for p in attempts:
		db.delete(p)
	revoked = _revoke_student_sessions(db, student_id)
	db.delete(row)
	db.commit()
	logger.info("Student %s deleted by %s (%d assignments, %d sessions)", student_id, principal.username, len(attempts), revoked)
	return {"ok": True, "removed_assignments": len(attempts)}


@router.post("/students/{student_id}/reset-password")
def reset_student_password(student_id: int, principal: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	row = _get_student(db, student_id)
	new_password = secrets.token_urlsafe(9)
	row.password_hash = hash_password(new_password)
	db.add(row)
	_revoke_student_sessions(db, student_id)
	db.commit()
	logger.info("Password of student %s reset by %s", student_id, principal.username)
	return {"student": _student_dict(row), "new_password": new_password}


@router.post("/exams", status_code=201)
def create_exam(req: ExamCreate, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	row = Exam(
		name=req.name.strip(),
		preparation_seconds=req.preparation_seconds if req.preparation_seconds is not None else settings.default_preparation_seconds,
		recording_seconds=req.recording_seconds if req.recording_seconds is not None else settings.default_recording_seconds,
	)
	db.add(row)
	db.commit()
	db.refresh(row)
	return exam_to_dict(row)


@router.get("/exams")
def list_exams(_: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	rows = db.query(Exam).order_by(Exam.created_at.desc(), Exam.id.desc()).all()
	return {"exams": [exam_to_dict(r) for r in rows]}


def _started_count(db: Session, exam_id: int) -> int:
	return (
		db.query(ExamParticipant)
		.filter(ExamParticipant.exam_id == exam_id, ExamParticipant.status.in_(STARTED))
		.count()
	)


@router.put("/exams/{exam_id}")
def update_exam(exam_id: int, req: ExamUpdate, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	row = get_exam_row(db, exam_id)
	changes_timing = (
		(req.preparation_seconds is not None and req.preparation_seconds != row.preparation_seconds)
		or (req.recording_seconds is not None and req.recording_seconds != row.recording_seconds)
	)
	# Running and finished attempts are timed against these durations
	if changes_timing and _started_count(db, exam_id):
		raise ExamInUse(exam_id, "durations cannot change once a student has started")
	if req.name is not None:
		row.name = req.name.strip()
	if req.preparation_seconds is not None:
		row.preparation_seconds = req.preparation_seconds
	if req.recording_seconds is not None:
		row.recording_seconds = req.recording_seconds
	db.add(row)
	db.commit()
	db.refresh(row)
	return exam_to_dict(row)


@router.delete("/exams/{exam_id}")
def delete_exam(exam_id: int, principal: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	row = get_exam_row(db, exam_id)
	assigned = db.query(ExamParticipant).filter(ExamParticipant.exam_id == exam_id).count()
	if assigned:
		raise ExamInUse(exam_id, f"{assigned} students are assigned; remove them first")
	removed = db.query(ExamQuestion).filter(ExamQuestion.exam_id == exam_id).delete(synchronize_session=False)
	db.delete(row)
	db.commit()
	logger.info("Exam %s deleted by %s with %d questions", exam_id, principal.username, removed)
	return {"ok": True, "removed_questions": removed}


@router.post("/exams/{exam_id}/students")
def assign_students(exam_id: int, req: AssignRequest, _: Principal = Depends(require_supervisor),
		db: Session = Depends(get_db), machine: ParticipationStateMachine = Depends(get_machine)):
	get_exam_row(db, exam_id)
	return machine.assign_students(exam_id, req.student_ids)


# ----------------------------------------------------------------------
# Questions
# ----------------------------------------------------------------------

@router.post("/exams/{exam_id}/questions", status_code=201)
def create_question(exam_id: int, req: QuestionCreate, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	return question_to_dict(add_question(db, exam_id, req.code, req.content_ref, req.active))


@router.post("/exams/{exam_id}/questions/batch")
def create_questions(exam_id: int, req: QuestionBatch, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	get_exam_row(db, exam_id)
	return add_questions(db, exam_id, [q.model_dump() for q in req.questions])


@router.get("/exams/{exam_id}/questions")
def get_questions(exam_id: int, active_only: bool = False, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	get_exam_row(db, exam_id)
	return {"questions": [question_to_dict(q) for q in list_questions(db, exam_id, active_only)]}


@router.get("/exams/{exam_id}/questions/usage")
def get_question_usage(exam_id: int, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	get_exam_row(db, exam_id)
	return {"usage": question_usage(db, exam_id)}


@router.get("/questions/{question_id}")
def read_question(question_id: int, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	return question_to_dict(get_question(db, question_id))


@router.patch("/questions/{question_id}/toggle")
def toggle_question(question_id: int, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	row = get_question(db, question_id)
	return question_to_dict(update_question(db, question_id, active=not row.active))


@router.patch("/questions/{question_id}")
def edit_question(question_id: int, req: QuestionUpdate, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	row = update_question(db, question_id, code=req.code, content_ref=req.content_ref, active=req.active)
	return question_to_dict(row)


@router.delete("/questions/{question_id}")
def remove_question(question_id: int, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db)):
	delete_question(db, question_id)
	return {"ok": True}


# ----------------------------------------------------------------------
# Monitoring and attempt control
# ----------------------------------------------------------------------

@router.get("/exams/{exam_id}/monitoring")
def monitoring(exam_id: int, _: Principal = Depends(require_supervisor), db: Session = Depends(get_db),
		machine: ParticipationStateMachine = Depends(get_machine)):
	get_exam_row(db, exam_id)
	machine.expire_overdue(exam_id=exam_id, grace_seconds=settings.expiry_grace_seconds)
	# The sweep committed in its own sessions; read fresh rows
	db.expire_all()
	return monitoring_data(db, exam_id, machine.now())


@router.post("/participants/{participant_id}/reset")
def reset_attempt(participant_id: int, principal: Principal = Depends(require_supervisor),
		machine: ParticipationStateMachine = Depends(get_machine)):
	snapshot = machine.reset(participant_id)
	data = snapshot.to_dict()
	data["reset_by"] = principal.username
	return {"participant": data}


@router.get("/participants/{participant_id}/audio")
def download_audio(participant_id: int, _: Principal = Depends(require_supervisor),
		machine: ParticipationStateMachine = Depends(get_machine)):
	snapshot = machine.get_participant(participant_id)
	if not snapshot.artifact_ref:
		raise HTTPException(status_code=404, detail="No recording stored for this attempt")
	try:
		path = machine.artifacts.resolve(snapshot.artifact_ref)
	except OralExamError:
		raise HTTPException(status_code=404, detail="No recording stored for this attempt")
	if not path.is_file():
		raise HTTPException(status_code=404, detail="Recording file is missing")
	return FileResponse(path, filename=snapshot.artifact_ref)
