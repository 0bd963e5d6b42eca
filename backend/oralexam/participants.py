from __future__ import annotations
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ExamNotFound, ParticipantAlreadyExists, ParticipantNotFound, StudentNotFound
from .models import Exam, ExamParticipant, ParticipantStatus, Student
from .timing import compute_phase


@dataclass(frozen=True)
class ParticipantSnapshot:
	"""Immutable copy of a participant row, safe to use after the session closed."""
	id: int
	exam_id: int
	student_id: int
	status: ParticipantStatus
	question_id: Optional[int] = None
	question_code: Optional[str] = None
	question_content_ref: Optional[str] = None
	start_time: Optional[datetime] = None
	recording_start_time: Optional[datetime] = None
	submit_time: Optional[datetime] = None
	artifact_ref: Optional[str] = None

	@classmethod
	def from_row(cls, row: ExamParticipant) -> "ParticipantSnapshot":
		return cls(
			id=row.id,
			exam_id=row.exam_id,
			student_id=row.student_id,
			status=ParticipantStatus(row.status),
			question_id=row.question_id,
			question_code=row.question_code,
			question_content_ref=row.question_content_ref,
			start_time=row.start_time,
			recording_start_time=row.recording_start_time,
			submit_time=row.submit_time,
			artifact_ref=row.artifact_ref,
		)

	def to_dict(self) -> Dict[str, Any]:
		data = asdict(self)
		data["status"] = self.status.value
		for key in ("start_time", "recording_start_time", "submit_time"):
			value = data[key]
			data[key] = value.isoformat() if value else None
		return data


@dataclass(frozen=True)
class ExamConfig:
	id: int
	name: str
	preparation_seconds: int
	recording_seconds: int

	@classmethod
	def from_row(cls, row: Exam) -> "ExamConfig":
		return cls(row.id, row.name, row.preparation_seconds, row.recording_seconds)


def get_participant_row(db: Session, participant_id: int, *, for_update: bool = False) -> ExamParticipant:
	q = db.query(ExamParticipant).filter(ExamParticipant.id == participant_id)
	if for_update:
		# Re-read the row inside the caller's transaction; ignored by SQLite
		q = q.with_for_update().populate_existing()
	row = q.one_or_none()
	if row is None:
		raise ParticipantNotFound(participant_id)
	return row


def get_exam_row(db: Session, exam_id: int) -> Exam:
	exam = db.get(Exam, exam_id)
	if exam is None:
		raise ExamNotFound(exam_id)
	return exam


def find_by_exam_and_student(db: Session, exam_id: int, student_id: int) -> Optional[ExamParticipant]:
	return (
		db.query(ExamParticipant)
		.filter(ExamParticipant.exam_id == exam_id, ExamParticipant.student_id == student_id)
		.first()
	)


def create_participant_row(db: Session, exam_id: int, student_id: int) -> ExamParticipant:
	"""Insert a waiting participant without a question. Caller commits."""
	get_exam_row(db, exam_id)
	if db.get(Student, student_id) is None:
		raise StudentNotFound(student_id)
	if find_by_exam_and_student(db, exam_id, student_id) is not None:
		raise ParticipantAlreadyExists(exam_id, student_id)
	row = ExamParticipant(exam_id=exam_id, student_id=student_id, status=ParticipantStatus.WAITING)
	db.add(row)
	try:
		db.flush()
	except IntegrityError as e:
		# Lost a race against another assignment of the same pair; the
		# caller's transaction rolls back on the way out
		raise ParticipantAlreadyExists(exam_id, student_id) from e
	return row


def in_progress_ids(db: Session, exam_id: Optional[int] = None) -> List[int]:
	q = db.query(ExamParticipant.id).filter(ExamParticipant.status == ParticipantStatus.IN_PROGRESS)
	if exam_id is not None:
		q = q.filter(ExamParticipant.exam_id == exam_id)
	return [pid for (pid,) in q.order_by(ExamParticipant.id).all()]


def list_for_student(db: Session, student_id: int) -> List[tuple]:
	return (
		db.query(ExamParticipant, Exam)
		.join(Exam, Exam.id == ExamParticipant.exam_id)
		.filter(ExamParticipant.student_id == student_id)
		.order_by(Exam.created_at.desc(), Exam.id.desc())
		.all()
	)


def _duration_seconds(row: ExamParticipant) -> Optional[float]:
	if row.start_time and row.submit_time:
		return (row.submit_time - row.start_time).total_seconds()
	return None


def exam_statistics(rows: List[ExamParticipant]) -> Dict[str, Any]:
	counts = {status.value: 0 for status in ParticipantStatus}
	durations: List[float] = []
	for row in rows:
		counts[ParticipantStatus(row.status).value] += 1
		if ParticipantStatus(row.status) is ParticipantStatus.COMPLETED:
			duration = _duration_seconds(row)
			if duration is not None:
				durations.append(duration)
	return {
		"total_participants": len(rows),
		"waiting": counts["waiting"],
		"in_progress": counts["in_progress"],
		"completed": counts["completed"],
		"average_duration": (sum(durations) / len(durations)) if durations else None,
	}


def monitoring_data(db: Session, exam_id: int, now: datetime) -> Dict[str, Any]:
	exam = get_exam_row(db, exam_id)
	pairs = (
		db.query(ExamParticipant, Student)
		.join(Student, Student.id == ExamParticipant.student_id)
		.filter(ExamParticipant.exam_id == exam_id)
		.order_by(Student.full_name.asc())
		.all()
	)
	participants = []
	for row, student in pairs:
		item = ParticipantSnapshot.from_row(row).to_dict()
		item["student"] = {"id": student.id, "student_code": student.student_code, "full_name": student.full_name}
		item["artifact_stored"] = bool(row.artifact_ref)
		item["duration"] = _duration_seconds(row)
		item.update(compute_phase(exam, row, now).to_dict())
		participants.append(item)
	return {
		"exam": exam_to_dict(exam),
		"participants": participants,
		"statistics": exam_statistics([row for row, _ in pairs]),
	}


def exam_to_dict(exam: Exam) -> Dict[str, Any]:
	return {
		"id": exam.id,
		"name": exam.name,
		"preparation_seconds": exam.preparation_seconds,
		"recording_seconds": exam.recording_seconds,
	}
