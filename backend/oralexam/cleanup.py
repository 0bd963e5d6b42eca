from __future__ import annotations
import logging
from typing import Optional

from sqlalchemy.orm import Session

from .artifacts import AudioStore
from .models import ExamParticipant, ParticipantStatus
from .settings import settings
from .state_machine import ParticipationStateMachine

logger = logging.getLogger(__name__)


def expire_overdue_attempts(machine: ParticipationStateMachine, grace_seconds: Optional[float] = None) -> int:
	# Backstop for attempts whose client went away: nothing else would ever
	# move them out of in_progress
	grace = settings.expiry_grace_seconds if grace_seconds is None else grace_seconds
	return len(machine.expire_overdue(grace_seconds=grace))


def purge_orphaned_staging(db: Session, store: AudioStore) -> int:
	"""Drop staged audio whose attempt is no longer in progress (or no longer exists)."""
	removed = 0
	for participant_id in store.staged_participant_ids():
		row = db.get(ExamParticipant, participant_id)
		if row is not None and ParticipantStatus(row.status) is ParticipantStatus.IN_PROGRESS:
			continue
		if store.discard_staged(participant_id):
			removed += 1
	if removed:
		logger.info("Purged %d orphaned staging file(s)", removed)
	return removed
