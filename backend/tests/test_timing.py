from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from oralexam.timing import PHASE_ORDER, Phase, compute_phase, is_expired, recording_deadline

T0 = datetime(2024, 5, 6, 9, 0, 0)
EXAM = SimpleNamespace(preparation_seconds=60, recording_seconds=300)


def _attempt(status='in_progress', start=T0, recording_start=None):
	return SimpleNamespace(status=status, start_time=start, recording_start_time=recording_start)


def _at(seconds: float) -> datetime:
	return T0 + timedelta(seconds=seconds)


def test_waiting_and_completed_have_no_countdown():
	"""Phases outside the active window carry no remaining time"""
	assert compute_phase(EXAM, _attempt('waiting', start=None), T0).phase is Phase.WAITING
	info = compute_phase(EXAM, _attempt('completed'), _at(10))
	assert info.phase is Phase.COMPLETED
	assert info.remaining_seconds is None


@pytest.mark.parametrize('elapsed,phase,remaining', [
	(0, Phase.PREPARATION, 60),
	(30, Phase.PREPARATION, 30),
	(60, Phase.RECORDING, 300),
	(90, Phase.RECORDING, 270),
	(359, Phase.RECORDING, 1),
	(360, Phase.EXPIRED, 0),
	(1000, Phase.EXPIRED, 0),
])
def test_phase_boundaries(elapsed, phase, remaining):
	"""Preparation is [0, 60), recording is [60, 360), expired afterwards"""
	info = compute_phase(EXAM, _attempt(), _at(elapsed))
	assert info.phase is phase
	assert info.remaining_seconds == pytest.approx(remaining)


def test_resume_after_reload_matches_live_countdown():
	"""A reload 90s in shows Recording with 270s, same as a client that never left"""
	info = compute_phase(EXAM, _attempt(), _at(90))
	assert info.phase is Phase.RECORDING
	assert info.remaining_seconds == pytest.approx(270)
	assert info.phase_ends_at == _at(360)


def test_phase_never_moves_backwards():
	"""Sampling forward in time yields a monotone phase sequence"""
	previous = -1
	for second in range(0, 400, 7):
		rank = PHASE_ORDER[compute_phase(EXAM, _attempt(), _at(second)).phase]
		assert rank >= previous
		previous = rank


def test_early_start_grants_full_recording_window():
	"""Skipping preparation 10s in still allows 300s of recording"""
	attempt = _attempt(recording_start=_at(10))
	info = compute_phase(EXAM, attempt, _at(10))
	assert info.phase is Phase.RECORDING
	assert info.remaining_seconds == pytest.approx(300)
	assert recording_deadline(EXAM, attempt) == _at(310)
	assert compute_phase(EXAM, attempt, _at(309)).phase is Phase.RECORDING
	assert compute_phase(EXAM, attempt, _at(310)).phase is Phase.EXPIRED


def test_clock_behind_start_counts_as_no_elapsed_time():
	"""A client clock slightly behind the server never shows more than the full window"""
	info = compute_phase(EXAM, _attempt(), _at(-3))
	assert info.phase is Phase.PREPARATION
	assert info.remaining_seconds == pytest.approx(60)


def test_zero_preparation_starts_in_recording():
	exam = SimpleNamespace(preparation_seconds=0, recording_seconds=120)
	assert compute_phase(exam, _attempt(), T0).phase is Phase.RECORDING


def test_in_progress_without_start_time_is_rejected():
	with pytest.raises(ValueError):
		compute_phase(EXAM, _attempt(start=None), T0)


def test_is_expired_honours_grace_period():
	attempt = _attempt()
	assert not is_expired(EXAM, attempt, _at(362), grace_seconds=5)
	assert is_expired(EXAM, attempt, _at(365), grace_seconds=5)
	assert not is_expired(EXAM, _attempt('completed'), _at(1000))
