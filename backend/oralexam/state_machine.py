"""
Participation state machine.

The only code allowed to change an ``ExamParticipant`` after creation. Every
operation holds the participant's own lock (not a global one) and runs in a
single transaction that re-reads the row, so a retried Submit racing an
expiry check resolves to one completion and one no-op.

    waiting --draw_question--> waiting (with question)
            --start--> in_progress --submit / auto_expire_check--> completed
    reset: waiting (with question) or completed --> waiting
"""

from __future__ import annotations

import logging
import random
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from sqlalchemy.orm import Session, sessionmaker

from .artifacts import Artifact, ArtifactMetadata, AudioStore
from .db import SessionLocal
from .errors import (
	AlreadyDrawn,
	AlreadyStarted,
	AlreadySubmitted,
	ArtifactStoreError,
	AttemptInProgress,
	NoQuestionsAvailable,
	NotReady,
	OralExamError,
	WrongPhase,
)
from .models import ExamParticipant, ParticipantStatus, utcnow
from .notifier import Notifier, ParticipantChangedEvent
from .participants import (
	ExamConfig,
	ParticipantSnapshot,
	create_participant_row,
	get_exam_row,
	get_participant_row,
	in_progress_ids,
)
from .questions import pick_random_question
from .timing import Phase, PhaseInfo, compute_phase, is_expired

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitOutcome:
	participant: ParticipantSnapshot
	artifact_stored: bool
	already_submitted: bool = False
	artifact_error: Optional[str] = None

	@property
	def submit_time(self) -> Optional[datetime]:
		return self.participant.submit_time

	def to_dict(self) -> Dict[str, Any]:
		return {
			"participant_id": self.participant.id,
			"status": self.participant.status.value,
			"submit_time": self.submit_time.isoformat() if self.submit_time else None,
			"artifact_stored": self.artifact_stored,
			"already_submitted": self.already_submitted,
			"artifact_error": self.artifact_error,
		}


@dataclass(frozen=True)
class ParticipantState:
	"""A participant together with its exam and derived phase at ``server_time``."""
	participant: ParticipantSnapshot
	exam: ExamConfig
	phase: PhaseInfo
	server_time: datetime

	def to_dict(self) -> Dict[str, Any]:
		data = self.participant.to_dict()
		data.pop("artifact_ref", None)
		data["artifact_stored"] = bool(self.participant.artifact_ref)
		data["exam"] = {
			"id": self.exam.id,
			"name": self.exam.name,
			"preparation_seconds": self.exam.preparation_seconds,
			"recording_seconds": self.exam.recording_seconds,
		}
		data.update(self.phase.to_dict())
		data["server_time"] = self.server_time.isoformat()
		return data


class _ParticipantLocks:
	"""Keyed lock registry: one re-entrant lock per participant id.

	An entry exists only while some thread holds or waits for it.
	"""

	def __init__(self) -> None:
		self._guard = threading.Lock()
		# participant id -> [lock, number of holders and waiters]
		self._locks: Dict[int, List[Any]] = {}

	def __len__(self) -> int:
		with self._guard:
			return len(self._locks)

	@contextmanager
	def hold(self, participant_id: int) -> Iterator[None]:
		with self._guard:
			entry = self._locks.get(participant_id)
			if entry is None:
				entry = self._locks[participant_id] = [threading.RLock(), 0]
			entry[1] += 1
		try:
			with entry[0]:
				yield
		finally:
			with self._guard:
				entry[1] -= 1
				if entry[1] == 0:
					del self._locks[participant_id]


class ParticipationStateMachine:
	"""Authoritative controller for exam attempts."""

	# Forward transitions of the persisted status; reset is handled separately
	_transitions: Dict[ParticipantStatus, Set[ParticipantStatus]] = {
		ParticipantStatus.WAITING: {ParticipantStatus.IN_PROGRESS},
		ParticipantStatus.IN_PROGRESS: {ParticipantStatus.COMPLETED},
		ParticipantStatus.COMPLETED: set(),
	}

	def __init__(
		self,
		session_factory: sessionmaker = SessionLocal,
		artifacts: Optional[AudioStore] = None,
		notifier: Optional[Notifier] = None,
		clock: Callable[[], datetime] = utcnow,
		rng: Optional[random.Random] = None,
	) -> None:
		self.session_factory = session_factory
		self.artifacts = artifacts or AudioStore()
		self.notifier = notifier or Notifier()
		self._clock = clock
		self._rng = rng or random.Random()
		self._locks = _ParticipantLocks()

	def now(self) -> datetime:
		return self._clock()

	def can_transition(self, current: ParticipantStatus, target: ParticipantStatus) -> bool:
		return target in self._transitions.get(current, set())

	def _advance(self, row: ExamParticipant, target: ParticipantStatus) -> None:
		current = ParticipantStatus(row.status)
		if not self.can_transition(current, target):
			raise WrongPhase()
		row.status = target

	@contextmanager
	def _locked(self, participant_id: int) -> Iterator[Tuple[Session, ExamParticipant]]:
		with self._locks.hold(participant_id):
			with self.session_factory() as db:
				with db.begin():
					yield db, get_participant_row(db, participant_id, for_update=True)

	def _notify(self, snapshot: ParticipantSnapshot, reason: str, artifact_stored: Optional[bool] = None) -> None:
		try:
			self.notifier.publish(ParticipantChangedEvent(snapshot, reason, artifact_stored))
		except Exception:
			# Delivery is best-effort; clients reconcile by re-fetching state
			logger.exception("Failed to publish %s for participant %s", reason, snapshot.id)

	# ------------------------------------------------------------------
	# Reads
	# ------------------------------------------------------------------

	def get_participant(self, participant_id: int) -> ParticipantSnapshot:
		with self.session_factory() as db:
			return ParticipantSnapshot.from_row(get_participant_row(db, participant_id))

	def describe(self, participant_id: int, now: Optional[datetime] = None) -> ParticipantState:
		now = now or self._clock()
		with self.session_factory() as db:
			row = get_participant_row(db, participant_id)
			exam = get_exam_row(db, row.exam_id)
			return ParticipantState(
				participant=ParticipantSnapshot.from_row(row),
				exam=ExamConfig.from_row(exam),
				phase=compute_phase(exam, row, now),
				server_time=now,
			)

	# ------------------------------------------------------------------
	# Lifecycle
	# ------------------------------------------------------------------

	def create_participant(self, exam_id: int, student_id: int) -> ParticipantSnapshot:
		with self.session_factory() as db:
			with db.begin():
				row = create_participant_row(db, exam_id, student_id)
				snapshot = ParticipantSnapshot.from_row(row)
		logger.info("Assigned student %s to exam %s (participant %s)", student_id, exam_id, snapshot.id)
		self._notify(snapshot, "assigned")
		return snapshot

	def assign_students(self, exam_id: int, student_ids: Iterable[int]) -> Dict[str, Any]:
		success = 0
		failed = 0
		errors: List[Dict[str, Any]] = []
		for student_id in student_ids:
			try:
				self.create_participant(exam_id, student_id)
				success += 1
			except OralExamError as e:
				failed += 1
				errors.append({"student_id": student_id, "code": e.code, "error": e.message})
		return {"success": success, "failed": failed, "errors": errors}

	# ------------------------------------------------------------------
	# Transitions
	# ------------------------------------------------------------------

	def draw_question(self, participant_id: int) -> ParticipantSnapshot:
		with self._locked(participant_id) as (db, row):
			if row.question_id is not None:
				raise AlreadyDrawn()
			if ParticipantStatus(row.status) is not ParticipantStatus.WAITING:
				raise WrongPhase("A question can only be drawn before the exam starts")
			question = pick_random_question(db, row.exam_id, self._rng)
			if question is None:
				raise NoQuestionsAvailable()
			row.question_id = question.id
			row.question_code = question.code
			row.question_content_ref = question.content_ref
			snapshot = ParticipantSnapshot.from_row(row)
		logger.info("Participant %s drew question %s", participant_id, snapshot.question_code)
		self._notify(snapshot, "question_drawn")
		return snapshot

	def start(self, participant_id: int, skip_preparation: bool = False) -> ParticipantSnapshot:
		"""Start the attempt; the returned ``start_time`` seeds the client countdown."""
		with self._locked(participant_id) as (db, row):
			if ParticipantStatus(row.status) is not ParticipantStatus.WAITING:
				raise AlreadyStarted()
			if row.question_id is None:
				raise NotReady()
			now = self._clock()
			self._advance(row, ParticipantStatus.IN_PROGRESS)
			row.start_time = now
			if skip_preparation:
				row.recording_start_time = now
			snapshot = ParticipantSnapshot.from_row(row)
		logger.info("Participant %s started at %s%s", participant_id, snapshot.start_time,
			" (preparation skipped)" if skip_preparation else "")
		self._notify(snapshot, "started")
		return snapshot

	def begin_recording(self, participant_id: int) -> ParticipantSnapshot:
		"""Skip the rest of the preparation; the full recording window starts now."""
		with self._locked(participant_id) as (db, row):
			if ParticipantStatus(row.status) is not ParticipantStatus.IN_PROGRESS:
				raise WrongPhase("Recording can only begin during the exam")
			now = self._clock()
			phase = compute_phase(get_exam_row(db, row.exam_id), row, now).phase
			if phase is Phase.RECORDING:
				# Retried or late request; recording is already running
				return ParticipantSnapshot.from_row(row)
			if phase is not Phase.PREPARATION:
				raise WrongPhase("The recording window has closed")
			row.recording_start_time = now
			snapshot = ParticipantSnapshot.from_row(row)
		logger.info("Participant %s began recording early at %s", participant_id, snapshot.recording_start_time)
		self._notify(snapshot, "recording_started")
		return snapshot

	def stage_chunk(self, participant_id: int, chunk: bytes) -> int:
		"""Buffer captured audio server-side; returns the total staged bytes."""
		with self._locked(participant_id) as (db, row):
			if ParticipantStatus(row.status) is not ParticipantStatus.IN_PROGRESS:
				raise WrongPhase("Audio can only be uploaded while recording")
			phase = compute_phase(get_exam_row(db, row.exam_id), row, self._clock()).phase
			if phase is Phase.PREPARATION:
				raise WrongPhase("Recording has not started yet")
			return self.artifacts.append_staged(participant_id, chunk)

	def _store_answer(self, row: ExamParticipant, artifact: Optional[Artifact]) -> Tuple[Optional[str], Optional[str]]:
		# Streamed chunks come first; an uploaded artifact is the tail after them
		data = self.artifacts.read_staged(row.id) or b""
		filename = "staged.webm"
		if artifact is not None and artifact.data:
			data += artifact.data
			filename = artifact.filename
		if not data:
			logger.warning("Participant %s completed without a recording", row.id)
			return None, "No recording was received"
		metadata = ArtifactMetadata(
			exam_id=row.exam_id,
			student_id=row.student_id,
			question_code=row.question_code,
			filename=filename,
		)
		try:
			return self.artifacts.store(data, metadata), None
		except ArtifactStoreError as e:
			# The exam clock wins over the recording device: complete anyway
			logger.error("Recording of participant %s lost: %s", row.id, e.message)
			return None, e.message

	def submit(self, participant_id: int, artifact: Optional[Artifact] = None, *, reason: str = "submitted") -> SubmitOutcome:
		"""Complete the attempt. Raises ``AlreadySubmitted`` when it is already completed."""
		stored_ref: Optional[str] = None
		try:
			with self._locked(participant_id) as (db, row):
				status = ParticipantStatus(row.status)
				if status is ParticipantStatus.COMPLETED:
					raise AlreadySubmitted(row.submit_time, bool(row.artifact_ref))
				if status is not ParticipantStatus.IN_PROGRESS:
					raise WrongPhase("The exam has not been started")
				stored_ref, artifact_error = self._store_answer(row, artifact)
				self._advance(row, ParticipantStatus.COMPLETED)
				row.artifact_ref = stored_ref
				row.submit_time = self._clock()
				snapshot = ParticipantSnapshot.from_row(row)
		except Exception:
			# Commit failed after the file was written; do not leave an orphan
			if stored_ref:
				self.artifacts.delete(stored_ref)
			raise
		self.artifacts.discard_staged(participant_id)
		logger.info("Participant %s %s at %s (audio %s)", participant_id, reason, snapshot.submit_time,
			stored_ref or "missing")
		self._notify(snapshot, reason, artifact_stored=stored_ref is not None)
		return SubmitOutcome(snapshot, artifact_stored=stored_ref is not None, artifact_error=artifact_error)

	def submit_attempt(self, participant_id: int, artifact: Optional[Artifact] = None) -> SubmitOutcome:
		"""Submit with retry semantics: a repeated submit is reported as success."""
		try:
			return self.submit(participant_id, artifact)
		except AlreadySubmitted as e:
			logger.info("Participant %s already submitted; treating retry as success", participant_id)
			return SubmitOutcome(
				self.get_participant(participant_id),
				artifact_stored=e.artifact_stored,
				already_submitted=True,
			)

	def auto_expire_check(
		self,
		participant_id: int,
		now: Optional[datetime] = None,
		grace_seconds: float = 0,
	) -> ParticipantSnapshot:
		"""Finalize the attempt if its window has elapsed; otherwise change nothing."""
		now = now or self._clock()
		with self._locks.hold(participant_id):
			with self.session_factory() as db:
				row = get_participant_row(db, participant_id)
				expired = is_expired(get_exam_row(db, row.exam_id), row, now, grace_seconds)
				snapshot = ParticipantSnapshot.from_row(row)
			if not expired:
				return snapshot
			logger.info("Participant %s ran out of time; auto-submitting", participant_id)
			try:
				return self.submit(participant_id, None, reason="auto_submitted").participant
			except AlreadySubmitted:
				return self.get_participant(participant_id)

	def expire_overdue(
		self,
		exam_id: Optional[int] = None,
		grace_seconds: float = 0,
		now: Optional[datetime] = None,
	) -> List[ParticipantSnapshot]:
		"""Sweep every in-progress attempt and finalize the ones past their deadline."""
		now = now or self._clock()
		with self.session_factory() as db:
			candidates = in_progress_ids(db, exam_id)
		finalized = []
		for participant_id in candidates:
			snapshot = self.auto_expire_check(participant_id, now, grace_seconds)
			if snapshot.status is ParticipantStatus.COMPLETED:
				finalized.append(snapshot)
		if finalized:
			logger.info("Expiry sweep finalized %d attempt(s)", len(finalized))
		return finalized

	def reset(self, participant_id: int) -> ParticipantSnapshot:
		"""Supervisor undo: back to waiting, discarding the question and the recording."""
		with self._locked(participant_id) as (db, row):
			if ParticipantStatus(row.status) is ParticipantStatus.IN_PROGRESS:
				raise AttemptInProgress()
			old_ref = row.artifact_ref
			row.status = ParticipantStatus.WAITING
			row.question_id = None
			row.question_code = None
			row.question_content_ref = None
			row.start_time = None
			row.recording_start_time = None
			row.submit_time = None
			row.artifact_ref = None
			snapshot = ParticipantSnapshot.from_row(row)
		# Files go only after the reset is durable
		if old_ref:
			self.artifacts.delete(old_ref)
		self.artifacts.discard_staged(participant_id)
		logger.info("Participant %s reset; discarded audio %s", participant_id, old_ref or "none")
		self._notify(snapshot, "reset")
		return snapshot

