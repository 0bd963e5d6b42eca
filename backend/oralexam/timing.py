"""
Exam timing policy.

Derives the phase of an attempt and the time left in it from absolute
timestamps and the exam configuration. Nothing here reads a clock or touches
storage: the caller passes ``now``. The same functions drive the live
countdown on the client and the cold resume after a reconnect or a server
restart, so the only durable inputs are ``start_time``, the optional
``recording_start_time`` (early start) and the exam durations.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional


class Phase(str, enum.Enum):
	WAITING = "waiting"
	PREPARATION = "preparation"
	RECORDING = "recording"
	EXPIRED = "expired"
	COMPLETED = "completed"


# Order used when comparing phases of the same attempt over time
PHASE_ORDER = {
	Phase.WAITING: 0,
	Phase.PREPARATION: 1,
	Phase.RECORDING: 2,
	Phase.EXPIRED: 3,
	Phase.COMPLETED: 3,
}


@dataclass(frozen=True)
class PhaseInfo:
	phase: Phase
	remaining_seconds: Optional[float] = None
	phase_ends_at: Optional[datetime] = None

	@property
	def is_active(self) -> bool:
		return self.phase in (Phase.PREPARATION, Phase.RECORDING)

	def to_dict(self) -> dict:
		return {
			"phase": self.phase.value,
			"remaining_seconds": self.remaining_seconds,
			"phase_ends_at": self.phase_ends_at.isoformat() if self.phase_ends_at else None,
		}


def _status_value(status: Any) -> str:
	return getattr(status, "value", status)


def _elapsed(since: datetime, now: datetime) -> float:
	# Clock skew can put `now` before the anchor; treat it as no time elapsed
	return max(0.0, (now - since).total_seconds())


def recording_deadline(exam: Any, participant: Any) -> Optional[datetime]:
	"""Absolute instant after which an in-progress attempt is expired."""
	if participant.start_time is None:
		return None
	if participant.recording_start_time is not None:
		return participant.recording_start_time + timedelta(seconds=exam.recording_seconds)
	return participant.start_time + timedelta(seconds=exam.preparation_seconds + exam.recording_seconds)


def compute_phase(exam: Any, participant: Any, now: datetime) -> PhaseInfo:
	"""Return the phase of ``participant`` at ``now``.

	``exam`` needs ``preparation_seconds`` and ``recording_seconds``;
	``participant`` needs ``status``, ``start_time`` and
	``recording_start_time``. ORM rows and snapshots both qualify.

	An early start re-anchors the recording window on
	``recording_start_time`` and grants the full ``recording_seconds``,
	regardless of how much preparation time was left.
	"""
	status = _status_value(participant.status)
	if status == "waiting":
		return PhaseInfo(Phase.WAITING)
	if status == "completed":
		return PhaseInfo(Phase.COMPLETED)
	if status != "in_progress":
		raise ValueError(f"Unknown participant status: {status!r}")
	if participant.start_time is None:
		raise ValueError(f"In-progress attempt {getattr(participant, 'id', None)} has no start time")

	recording_seconds = float(exam.recording_seconds)
	deadline = recording_deadline(exam, participant)

	if participant.recording_start_time is not None:
		elapsed = _elapsed(participant.recording_start_time, now)
		if elapsed < recording_seconds:
			return PhaseInfo(Phase.RECORDING, recording_seconds - elapsed, deadline)
		return PhaseInfo(Phase.EXPIRED, 0.0, deadline)

	preparation_seconds = float(exam.preparation_seconds)
	elapsed = _elapsed(participant.start_time, now)
	if elapsed < preparation_seconds:
		return PhaseInfo(
			Phase.PREPARATION,
			preparation_seconds - elapsed,
			participant.start_time + timedelta(seconds=preparation_seconds),
		)
	if elapsed < preparation_seconds + recording_seconds:
		return PhaseInfo(Phase.RECORDING, preparation_seconds + recording_seconds - elapsed, deadline)
	return PhaseInfo(Phase.EXPIRED, 0.0, deadline)


def is_expired(exam: Any, participant: Any, now: datetime, grace_seconds: float = 0) -> bool:
	"""True when an in-progress attempt is past its deadline plus ``grace_seconds``."""
	if _status_value(participant.status) != "in_progress":
		return False
	return compute_phase(exam, participant, now - timedelta(seconds=grace_seconds)).phase is Phase.EXPIRED
