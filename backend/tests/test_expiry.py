"""Server-side expiry enforcement when no client is around."""

import asyncio

import pytest

from oralexam import main
from oralexam.cleanup import expire_overdue_attempts, purge_orphaned_staging
from oralexam.models import ParticipantStatus


def _start(machine, participant, **kwargs):
	machine.draw_question(participant.id)
	return machine.start(participant.id, **kwargs)


def test_sweep_respects_grace(machine, participant, clock):
	_start(machine, participant)
	clock.advance(362)
	assert expire_overdue_attempts(machine, grace_seconds=5) == 0
	clock.advance(5)
	assert expire_overdue_attempts(machine, grace_seconds=5) == 1
	assert machine.get_participant(participant.id).status is ParticipantStatus.COMPLETED


def test_sweep_keeps_staged_audio_of_abandoned_attempt(machine, participant, clock, store):
	"""Audio streamed before the tab closed becomes the stored answer"""
	_start(machine, participant, skip_preparation=True)
	machine.stage_chunk(participant.id, b'partial-answer')
	clock.advance(301)
	assert expire_overdue_attempts(machine, grace_seconds=0) == 1
	ref = machine.get_participant(participant.id).artifact_ref
	assert store.resolve(ref).read_bytes() == b'partial-answer'


def test_purge_orphaned_staging(db, machine, participant, store):
	_start(machine, participant, skip_preparation=True)
	machine.stage_chunk(participant.id, b'live')
	store.append_staged(9999, b'orphan')
	assert purge_orphaned_staging(db, store) == 1
	assert store.staged_participant_ids() == [participant.id]


def test_sweep_once_runs_both_passes(machine, participant, clock, store):
	_start(machine, participant)
	store.append_staged(9999, b'orphan')
	clock.advance(1000)
	assert main._sweep_once(machine) == 1
	assert store.staged_participant_ids() == []


@pytest.mark.asyncio
async def test_watcher_keeps_running_after_failure(monkeypatch):
	calls = []

	def flaky(machine):
		calls.append(machine)
		if len(calls) == 1:
			raise RuntimeError('database unavailable')
		return 0

	monkeypatch.setattr(main, '_sweep_once', flaky)
	task = asyncio.create_task(main._expiry_watcher(0.01))
	try:
		for _ in range(100):
			if len(calls) >= 2:
				break
			await asyncio.sleep(0.01)
	finally:
		task.cancel()
	assert len(calls) >= 2
