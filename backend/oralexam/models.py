from __future__ import annotations
import enum
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, String, DateTime, Integer, ForeignKey, UniqueConstraint, Enum
from .db import Base


def utcnow() -> datetime:
	# Timestamps are stored as naive UTC
	return datetime.now(timezone.utc).replace(tzinfo=None)


class ParticipantStatus(str, enum.Enum):
	WAITING = "waiting"
	IN_PROGRESS = "in_progress"
	COMPLETED = "completed"


class Student(Base):
	__tablename__ = "students"
	id = Column(Integer, primary_key=True, index=True)
	student_code = Column(String(64), unique=True, nullable=False, index=True)
	full_name = Column(String(256), nullable=False)
	password_hash = Column(String(256), nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class Supervisor(Base):
	__tablename__ = "supervisors"
	id = Column(Integer, primary_key=True, index=True)
	username = Column(String(128), unique=True, nullable=False, index=True)
	full_name = Column(String(256), nullable=True)
	password_hash = Column(String(256), nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# Primary key is the JWT id (jti)
	session_id = Column(String(64), primary_key=True)
	subject = Column(String(128), nullable=False, index=True)
	role = Column(String(16), nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=utcnow, nullable=False)


class Exam(Base):
	__tablename__ = "exams"
	id = Column(Integer, primary_key=True, index=True)
	name = Column(String(256), nullable=False)
	preparation_seconds = Column(Integer, nullable=False)
	recording_seconds = Column(Integer, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class ExamQuestion(Base):
	__tablename__ = "exam_questions"
	__table_args__ = (UniqueConstraint("exam_id", "code", name="uq_exam_question_code"),)
	id = Column(Integer, primary_key=True, index=True)
	exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
	code = Column(String(64), nullable=False)
	# Opaque pointer to the question content (usually a document URL)
	content_ref = Column(String(1024), nullable=False)
	active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class ExamParticipant(Base):
	__tablename__ = "exam_participants"
	__table_args__ = (UniqueConstraint("exam_id", "student_id", name="uq_exam_participant"),)
	id = Column(Integer, primary_key=True, index=True)
	exam_id = Column(Integer, ForeignKey("exams.id"), nullable=False, index=True)
	student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
	question_id = Column(Integer, ForeignKey("exam_questions.id"), nullable=True)
	# Identity of the drawn question at draw time; later question edits do not touch it
	question_code = Column(String(64), nullable=True)
	question_content_ref = Column(String(1024), nullable=True)
	status = Column(
		Enum(ParticipantStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=16),
		default=ParticipantStatus.WAITING,
		nullable=False,
		index=True,
	)
	start_time = Column(DateTime, nullable=True)
	# Set when the student skips the rest of the preparation time
	recording_start_time = Column(DateTime, nullable=True)
	submit_time = Column(DateTime, nullable=True)
	artifact_ref = Column(String(512), nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
