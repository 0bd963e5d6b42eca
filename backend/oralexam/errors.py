"""
Exam errors
===========

Every rejected operation maps to one of these classes. Each carries a stable
``code`` for clients and a distinct message for users, because the corrective
action differs per kind (reload the page, wait, contact the supervisor).

Unexpected failures (database errors, corrupt rows) are deliberately not
represented here; they propagate as-is.
"""

from typing import Any, Dict, Optional


class OralExamError(Exception):
	"""Base exception for all exam business errors"""

	status_code: int = 400

	def __init__(
		self,
		message: str,
		code: str = "ERROR",
		details: Optional[Dict[str, Any]] = None,
	):
		self.message = message
		self.code = code
		self.details = details or {}
		super().__init__(self.message)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"code": self.code,
			"detail": self.message,
			"details": self.details,
		}


# ============================================
# Lookup errors
# ============================================

class NotFoundError(OralExamError):
	status_code = 404

	def __init__(self, message: str):
		super().__init__(message, code="NOT_FOUND")


class ParticipantNotFound(NotFoundError):
	def __init__(self, participant_id: int):
		super().__init__(f"Exam attempt {participant_id} not found")


class ExamNotFound(NotFoundError):
	def __init__(self, exam_id: int):
		super().__init__(f"Exam {exam_id} not found")


class QuestionNotFound(NotFoundError):
	def __init__(self, question_id: int):
		super().__init__(f"Question {question_id} not found")


class StudentNotFound(NotFoundError):
	def __init__(self, student_id: int):
		super().__init__(f"Student {student_id} not found")


# ============================================
# Precondition violations
# ============================================

class PreconditionError(OralExamError):
	"""Rejected transition; the caller should re-fetch state and reconcile."""

	status_code = 409


class WrongPhase(PreconditionError):
	def __init__(self, message: str = "This action is not available in the current exam phase. Reload the page."):
		super().__init__(message, code="WRONG_PHASE")


class AlreadyDrawn(PreconditionError):
	def __init__(self):
		super().__init__("A question has already been drawn for this exam", code="ALREADY_DRAWN")


class AlreadyStarted(PreconditionError):
	def __init__(self):
		super().__init__("The exam has already been started", code="ALREADY_STARTED")


class NotReady(PreconditionError):
	def __init__(self):
		super().__init__("Draw a question before starting the exam", code="NOT_READY")


class AttemptInProgress(PreconditionError):
	def __init__(self):
		super().__init__("The student is taking the exam right now; wait until it is submitted", code="IN_PROGRESS")


class AlreadySubmitted(PreconditionError):
	"""Submit on a completed attempt. SubmitAttempt reports this as success."""

	def __init__(self, submit_time=None, artifact_stored: bool = False):
		super().__init__("The exam has already been submitted", code="ALREADY_SUBMITTED")
		self.submit_time = submit_time
		self.artifact_stored = artifact_stored


# ============================================
# Resource unavailability
# ============================================

class NoQuestionsAvailable(OralExamError):
	status_code = 409

	def __init__(self):
		super().__init__("No active questions for this exam. Ask your supervisor to add questions.", code="NO_QUESTIONS")


class ArtifactStoreError(OralExamError):
	status_code = 500

	def __init__(self, message: str = "The recording could not be saved"):
		super().__init__(message, code="ARTIFACT_STORE_FAILED")


class InvalidArtifact(ArtifactStoreError):
	status_code = 400

	def __init__(self, message: str):
		super().__init__(message)
		self.code = "INVALID_ARTIFACT"


# ============================================
# Management conflicts
# ============================================

class DuplicateRecord(OralExamError):
	status_code = 409

	def __init__(self, message: str):
		super().__init__(message, code="ALREADY_EXISTS")


class ParticipantAlreadyExists(DuplicateRecord):
	def __init__(self, exam_id: int, student_id: int):
		super().__init__(f"Student {student_id} is already assigned to exam {exam_id}")


class InUse(OralExamError):
	status_code = 409

	def __init__(self, message: str):
		super().__init__(message, code="IN_USE")


class QuestionInUse(InUse):
	def __init__(self, question_id: int):
		super().__init__(f"Question {question_id} has been drawn by a student; deactivate it instead")


class ExamInUse(InUse):
	def __init__(self, exam_id: int, message: str):
		super().__init__(f"Exam {exam_id}: {message}")


class StudentInUse(InUse):
	def __init__(self, student_id: int):
		super().__init__(f"Student {student_id} has started or finished an exam and cannot be deleted")


class Forbidden(OralExamError):
	status_code = 403

	def __init__(self, message: str = "You do not have access to this exam"):
		super().__init__(message, code="FORBIDDEN")
