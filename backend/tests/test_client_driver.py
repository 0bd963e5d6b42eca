"""Student-side attempt driver against the real app over httpx's ASGI transport."""

import asyncio
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from conftest import STUDENT_PASSWORD
from oralexam.client.api import ApiError, ExamApiClient
from oralexam.client.driver import (
	MICROPHONE_BUSY_MESSAGE,
	MICROPHONE_OK_MESSAGE,
	NETWORK_MESSAGE,
	RECORDING_LOST_MESSAGE,
	USER_MESSAGES,
	AttemptSession,
	ServerClock,
)
from oralexam.main import app
from oralexam.models import ParticipantStatus
from oralexam.timing import Phase


class FakeRecorder:
	"""Captures ``audio`` as soon as it starts; ``feed`` adds more."""

	def __init__(self, audio=b'captured-audio'):
		self.audio = audio
		self.buffer = b''
		self.acquired = False
		self.recording = False
		self.acquire_calls = 0
		self.start_calls = 0

	async def acquire(self):
		self.acquire_calls += 1
		self.acquired = True

	def start(self):
		self.start_calls += 1
		self.recording = True
		self.buffer = self.audio

	def feed(self, data):
		assert self.recording
		self.buffer += data

	def drain(self):
		data, self.buffer = self.buffer, b''
		return data

	def stop(self):
		self.recording = False
		return self.drain()

	def release(self):
		self.acquired = False


@pytest_asyncio.fixture
async def api(machine, student):
	client = ExamApiClient('http://test', transport=httpx.ASGITransport(app=app))
	await client.login(student.student_code, STUDENT_PASSWORD)
	yield client
	await client.aclose()


@pytest_asyncio.fixture
async def session_factory(api, clock):
	sessions = []

	def _make(participant, recorder):
		s = AttemptSession(api, participant.id, recorder, clock=ServerClock(clock), tick_seconds=3600)
		sessions.append(s)
		return s

	yield _make
	for s in sessions:
		await s.close()


@pytest.mark.asyncio
async def test_full_attempt_uploads_once_at_expiry(session_factory, participant, machine, clock):
	"""Draw, start, record through the window, auto-finalize at the deadline"""
	recorder = FakeRecorder()
	session = session_factory(participant, recorder)

	view = await session.load()
	assert view.phase is Phase.WAITING
	assert await session.draw_question()
	assert session.view.question['code'] in {'Q1', 'Q2', 'Q3'}

	assert await session.start()
	assert session.view.phase is Phase.PREPARATION
	assert session.view.remaining_seconds == 60
	assert recorder.acquired and not recorder.recording

	clock.advance(61)
	await session.tick()
	assert session.view.phase is Phase.RECORDING
	assert recorder.recording
	assert session.chunks_uploaded == 1

	clock.advance(300)
	await session.tick()
	assert session.view.phase is Phase.COMPLETED
	assert session.view.artifact_stored is True
	assert session.uploads == 1
	assert not recorder.acquired

	final = machine.get_participant(participant.id)
	assert final.status is ParticipantStatus.COMPLETED
	assert machine.artifacts.resolve(final.artifact_ref).read_bytes() == b'captured-audio'


@pytest.mark.asyncio
async def test_manual_submit_and_expiry_upload_once(session_factory, participant, machine, clock):
	machine.draw_question(participant.id)
	machine.start(participant.id)
	session = session_factory(participant, FakeRecorder())
	clock.advance(100)
	await session.load()
	clock.advance(300)
	await asyncio.gather(session.submit(), session.tick(), session.submit())
	assert session.uploads == 1
	assert session.view.phase is Phase.COMPLETED


@pytest.mark.asyncio
async def test_reload_resumes_recording_from_server_anchor(session_factory, participant, machine, clock):
	"""Reload 90s in: Recording with 270s left and capture running again"""
	machine.draw_question(participant.id)
	machine.start(participant.id)
	clock.advance(90)
	recorder = FakeRecorder()
	session = session_factory(participant, recorder)
	view = await session.load()
	assert view.phase is Phase.RECORDING
	assert view.remaining_seconds == 270
	assert recorder.recording


@pytest.mark.asyncio
async def test_early_recording_gets_full_window(session_factory, participant, machine, clock):
	machine.draw_question(participant.id)
	machine.start(participant.id)
	recorder = FakeRecorder()
	session = session_factory(participant, recorder)
	await session.load()
	clock.advance(10)
	assert await session.start_recording_early()
	assert session.view.phase is Phase.RECORDING
	assert session.view.remaining_seconds == 300
	assert recorder.start_calls == 1


@pytest.mark.asyncio
async def test_rejected_draw_reloads_state(session_factory, participant, machine):
	drawn = machine.draw_question(participant.id)
	session = session_factory(participant, FakeRecorder())
	assert not await session.draw_question()
	assert session.view.error_code == 'ALREADY_DRAWN'
	assert session.view.message == USER_MESSAGES['ALREADY_DRAWN']
	assert session.view.question['code'] == drawn.question_code


@pytest.mark.asyncio
async def test_network_failure_is_surfaced_without_retry(participant, clock):
	calls = []

	def handler(request):
		calls.append(request.url.path)
		raise httpx.ConnectError('connection refused', request=request)

	api = ExamApiClient('http://test', token='t', transport=httpx.MockTransport(handler))
	session = AttemptSession(api, participant.id, FakeRecorder(), clock=ServerClock(clock))
	try:
		assert not await session.draw_question()
		assert session.view.message == NETWORK_MESSAGE
		assert calls == [f"/student/exam/{participant.id}/draw-question"]
	finally:
		await api.aclose()


@pytest.mark.asyncio
async def test_failed_upload_still_completes(session_factory, api, participant, machine, clock, monkeypatch):
	"""The window is gone; the student is told, never prompted to record again"""
	machine.draw_question(participant.id)
	machine.start(participant.id)
	session = session_factory(participant, FakeRecorder())
	clock.advance(100)
	await session.load()

	async def timeout(*args, **kwargs):
		raise httpx.ReadTimeout('timed out')

	monkeypatch.setattr(api, 'submit', timeout)
	await session.submit()
	assert session.view.phase is Phase.COMPLETED
	assert session.view.artifact_stored is False
	assert session.view.message == RECORDING_LOST_MESSAGE
	assert not session.request_leave()


@pytest.mark.asyncio
async def test_server_auto_submit_event_ends_session_without_upload(session_factory, participant, machine, clock):
	machine.draw_question(participant.id)
	machine.start(participant.id)
	recorder = FakeRecorder()
	session = session_factory(participant, recorder)
	await session.load()
	# Let the timer take its first tick while still in preparation
	await asyncio.sleep(0)
	assert session.request_leave()

	clock.advance(400)
	machine.auto_expire_check(participant.id)
	await session.handle_event({'type': 'participant_changed', 'participant_id': participant.id, 'reason': 'auto_submitted'})
	assert session.view.phase is Phase.COMPLETED
	assert session.uploads == 0
	assert not recorder.acquired


@pytest.mark.asyncio
async def test_server_clock_corrects_local_drift(api, clock):
	"""A local clock 30s behind is corrected by the measured offset"""
	server_clock = ServerClock(lambda: clock.current - timedelta(seconds=30))
	offset = await server_clock.sync(api)
	assert offset == timedelta(seconds=30)
	assert server_clock.now() == clock.current


@pytest.mark.asyncio
async def test_api_error_exposes_code(api, participant):
	with pytest.raises(ApiError) as excinfo:
		await api.start(participant.id)
	assert excinfo.value.status_code == 409
	assert excinfo.value.code == 'NOT_READY'
	assert excinfo.value.is_precondition


@pytest.mark.asyncio
async def test_failed_request_leaves_view_idle(participant, clock):
	rendered = []

	def handler(request):
		raise httpx.ConnectError('connection refused', request=request)

	api = ExamApiClient('http://test', token='t', transport=httpx.MockTransport(handler))
	session = AttemptSession(api, participant.id, FakeRecorder(), clock=ServerClock(clock), on_render=rendered.append)
	try:
		assert not await session.start()
		assert rendered[0].busy is True
		assert rendered[-1].busy is False
		assert rendered[-1].error_code == 'NETWORK'
	finally:
		await api.aclose()


@pytest.mark.asyncio
async def test_rejected_request_leaves_view_idle(session_factory, participant, machine):
	machine.draw_question(participant.id)
	rendered = []
	session = session_factory(participant, FakeRecorder())
	session.on_render = rendered.append
	assert not await session.draw_question()
	assert rendered[-1].busy is False
	assert rendered[-1].error_code == 'ALREADY_DRAWN'


@pytest.mark.asyncio
async def test_recording_is_streamed_and_only_the_tail_submitted(session_factory, participant, machine, clock):
	machine.draw_question(participant.id)
	machine.start(participant.id)
	recorder = FakeRecorder(b'part-1|')
	session = session_factory(participant, recorder)
	clock.advance(61)
	await session.load()
	assert machine.artifacts.read_staged(participant.id) == b'part-1|'

	recorder.feed(b'part-2|')
	clock.advance(60)
	await session.tick()
	assert session.chunks_uploaded == 2
	assert machine.artifacts.read_staged(participant.id) == b'part-1|part-2|'

	recorder.feed(b'tail')
	await session.submit()
	assert session.view.artifact_stored is True
	final = machine.get_participant(participant.id)
	assert machine.artifacts.resolve(final.artifact_ref).read_bytes() == b'part-1|part-2|tail'
	assert machine.artifacts.read_staged(participant.id) is None


@pytest.mark.asyncio
async def test_closed_tab_keeps_streamed_audio(session_factory, participant, machine, clock):
	"""The student leaves mid-recording; the expiry check stores what was streamed"""
	machine.draw_question(participant.id)
	machine.start(participant.id, skip_preparation=True)
	recorder = FakeRecorder(b'streamed-answer')
	session = session_factory(participant, recorder)
	await session.load()
	await session.close()
	assert session.uploads == 0

	clock.advance(400)
	final = machine.auto_expire_check(participant.id)
	assert final.status is ParticipantStatus.COMPLETED
	assert machine.artifacts.resolve(final.artifact_ref).read_bytes() == b'streamed-answer'


@pytest.mark.asyncio
async def test_failed_chunk_is_sent_with_the_tail(session_factory, api, participant, machine, clock, monkeypatch):
	machine.draw_question(participant.id)
	machine.start(participant.id, skip_preparation=True)
	recorder = FakeRecorder(b'first')
	session = session_factory(participant, recorder)

	async def refused(*args, **kwargs):
		raise httpx.ConnectError('connection refused')

	monkeypatch.setattr(api, 'upload_chunk', refused)
	await session.load()
	assert session.chunks_uploaded == 0

	recorder.feed(b'-second')
	await session.submit()
	final = machine.get_participant(participant.id)
	assert machine.artifacts.resolve(final.artifact_ref).read_bytes() == b'first-second'


@pytest.mark.asyncio
async def test_microphone_check_stores_nothing(session_factory, participant, machine):
	recorder = FakeRecorder(b'hello')
	session = session_factory(participant, recorder)
	assert await session.test_microphone(sample_seconds=0)
	assert session.view.message == MICROPHONE_OK_MESSAGE
	assert not recorder.acquired and not recorder.recording
	assert [p for p in machine.artifacts.base_dir.iterdir() if p.is_file()] == []
	assert machine.artifacts.read_staged(participant.id) is None


@pytest.mark.asyncio
async def test_silent_microphone_is_reported(session_factory, participant):
	session = session_factory(participant, FakeRecorder(b''))
	assert not await session.test_microphone(sample_seconds=0)
	assert session.view.error_code == 'INVALID_ARTIFACT'
	assert session.view.busy is False


@pytest.mark.asyncio
async def test_microphone_check_refused_while_recording(session_factory, participant, machine):
	machine.draw_question(participant.id)
	machine.start(participant.id, skip_preparation=True)
	recorder = FakeRecorder()
	session = session_factory(participant, recorder)
	await session.load()
	assert not await session.test_microphone(sample_seconds=0)
	assert session.view.message == MICROPHONE_BUSY_MESSAGE
	assert recorder.recording
