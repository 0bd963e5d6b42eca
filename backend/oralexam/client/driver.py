"""
Attempt driver
==============

Drives one exam attempt from the student's side: renders the phase the
server's timestamps imply, captures audio during the recording window, streams
it to the server while recording and submits the remainder exactly once.

One ``AttemptSession`` exists per attempt and owns its timer task and its
microphone handle; nothing is kept at module level. Countdowns are never
accumulated locally: every tick recomputes the phase from the server-issued
``start_time`` (and early-start anchor) against a drift-corrected clock, so a
suspended tab or a slow event loop cannot make the display lie.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol

import httpx

from ..models import utcnow
from ..timing import Phase, PhaseInfo, compute_phase
from .api import ApiError, ExamApiClient, parse_time

logger = logging.getLogger(__name__)

# What the student should do about each rejection
USER_MESSAGES: Dict[str, str] = {
	"WRONG_PHASE": "The exam has moved on. The page was refreshed with the current state.",
	"ALREADY_DRAWN": "Your question was already drawn. It is shown below.",
	"ALREADY_STARTED": "The exam has already started. Resuming where you are.",
	"NOT_READY": "Draw a question before starting.",
	"IN_PROGRESS": "The exam is in progress.",
	"NO_QUESTIONS": "No questions are available yet. Please contact your supervisor.",
	"NOT_FOUND": "This exam could not be found. Please contact your supervisor.",
	"FORBIDDEN": "This exam is not assigned to you.",
}
NETWORK_MESSAGE = "The server did not answer. Check your connection and try again."
RECORDING_LOST_MESSAGE = "Your exam is complete, but the recording could not be uploaded. Please tell your supervisor."
MICROPHONE_OK_MESSAGE = "Your microphone works. You are ready to start."
MICROPHONE_BUSY_MESSAGE = "The microphone is recording your answer right now."


class Recorder(Protocol):
	"""Microphone capture used by the driver."""

	async def acquire(self) -> None:
		"""Obtain the microphone; may wait for the user's permission."""

	def start(self) -> None:
		"""Begin buffering audio."""

	def drain(self) -> bytes:
		"""Return and forget what was captured since ``start`` or the previous drain."""

	def stop(self) -> Optional[bytes]:
		"""Stop buffering and return what was captured since the last drain."""

	def release(self) -> None:
		"""Give the microphone back."""


class ServerClock:
	"""Local clock corrected by the offset to the server clock."""

	def __init__(self, local_clock: Callable[[], datetime] = utcnow) -> None:
		self._local = local_clock
		self.offset = timedelta(0)

	async def sync(self, api: ExamApiClient) -> timedelta:
		sent = self._local()
		server = await api.server_time()
		received = self._local()
		# Assume the server read its clock halfway through the round trip
		self.offset = server - (sent + (received - sent) / 2)
		return self.offset

	def now(self) -> datetime:
		return self._local() + self.offset


@dataclass(frozen=True)
class _AttemptTiming:
	status: str
	start_time: Optional[datetime]
	recording_start_time: Optional[datetime]
	preparation_seconds: int
	recording_seconds: int

	@classmethod
	def from_payload(cls, data: Dict[str, Any]) -> "_AttemptTiming":
		exam = data.get("exam") or {}
		return cls(
			status=data["status"],
			start_time=parse_time(data.get("start_time")),
			recording_start_time=parse_time(data.get("recording_start_time")),
			preparation_seconds=int(exam.get("preparation_seconds", 0)),
			recording_seconds=int(exam.get("recording_seconds", 0)),
		)


@dataclass(frozen=True)
class AttemptView:
	"""Everything the rendering layer needs; rendering never mutates state."""
	phase: Phase = Phase.WAITING
	remaining_seconds: Optional[int] = None
	question: Optional[Dict[str, Any]] = None
	message: Optional[str] = None
	error_code: Optional[str] = None
	artifact_stored: Optional[bool] = None
	busy: bool = False


class AttemptSession:
	def __init__(
		self,
		api: ExamApiClient,
		participant_id: int,
		recorder: Recorder,
		*,
		clock: Optional[ServerClock] = None,
		on_render: Optional[Callable[[AttemptView], None]] = None,
		tick_seconds: float = 1.0,
	) -> None:
		self.api = api
		self.participant_id = participant_id
		self.recorder = recorder
		self.clock = clock or ServerClock()
		self.on_render = on_render
		self.tick_seconds = tick_seconds
		self.view = AttemptView()
		self._timing: Optional[_AttemptTiming] = None
		self._timer: Optional[asyncio.Task] = None
		self._mic_acquired = False
		self._capturing = False
		self._finalized = False
		self._finalize_lock = asyncio.Lock()
		# Chunk uploads and the final submit never overlap
		self._upload_lock = asyncio.Lock()
		self._pending = b""
		self._streaming = True
		self.uploads = 0
		self.chunks_uploaded = 0

	# ------------------------------------------------------------------
	# State
	# ------------------------------------------------------------------

	def _render(self, **changes: Any) -> None:
		if changes:
			self.view = replace(self.view, **changes)
		if self.on_render is not None:
			self.on_render(self.view)

	def phase(self) -> PhaseInfo:
		if self._timing is None:
			return PhaseInfo(Phase.WAITING)
		return compute_phase(self._timing, self._timing, self.clock.now())

	async def _apply(self, data: Dict[str, Any]) -> None:
		self._timing = _AttemptTiming.from_payload(data)
		if "question" in data:
			self.view = replace(self.view, question=data["question"])
		if self._timing.status == "completed" and not self._finalized:
			# Finished elsewhere (auto-submit, another tab); nothing left to upload
			self._finalized = True
			self._discard_capture()
			self.view = replace(self.view, artifact_stored=data.get("artifact_stored"))
		await self.tick()

	async def load(self) -> AttemptView:
		"""Fetch the attempt and render whatever phase it is in (resume after reload)."""
		try:
			await self.clock.sync(self.api)
			data = await self.api.get_attempt(self.participant_id)
		except httpx.HTTPError as e:
			logger.warning("Loading attempt %s failed: %s", self.participant_id, e)
			self._render(message=NETWORK_MESSAGE, error_code="NETWORK")
			return self.view
		except ApiError as e:
			self._render(message=USER_MESSAGES.get(e.code, e.message), error_code=e.code)
			return self.view
		await self._apply(data)
		if self.phase().is_active:
			self.run()
		return self.view

	async def _call(self, request) -> Optional[Dict[str, Any]]:
		self._render(busy=True, message=None, error_code=None)
		try:
			return await request
		except ApiError as e:
			logger.info("Attempt %s: server rejected request (%s)", self.participant_id, e.code)
			if e.is_precondition:
				await self.load()
			self._render(busy=False, message=USER_MESSAGES.get(e.code, e.message), error_code=e.code)
			return None
		except httpx.HTTPError as e:
			# Surface it; the student decides whether to try again
			logger.warning("Attempt %s: request failed: %s", self.participant_id, e)
			self._render(busy=False, message=NETWORK_MESSAGE, error_code="NETWORK")
			return None
		finally:
			if self.view.busy:
				self._render(busy=False)

	# ------------------------------------------------------------------
	# Student actions
	# ------------------------------------------------------------------

	async def draw_question(self) -> bool:
		data = await self._call(self.api.draw_question(self.participant_id))
		if data is None:
			return False
		self._render(question=data["question"])
		return True

	async def start(self, skip_preparation: bool = False) -> bool:
		# The countdown may only begin once the server has stamped start_time
		data = await self._call(self.api.start(self.participant_id, skip_preparation))
		if data is None:
			return False
		await self._apply(data)
		self.run()
		return True

	async def start_recording_early(self) -> bool:
		data = await self._call(self.api.begin_recording(self.participant_id))
		if data is None:
			return False
		await self._apply(data)
		return True

	async def test_microphone(self, sample_seconds: float = 3.0) -> bool:
		"""Record a short sample and have the server check it; nothing is stored."""
		if self._capturing:
			self._render(message=MICROPHONE_BUSY_MESSAGE, error_code=None)
			return False
		held = self._mic_acquired
		if not held:
			await self.recorder.acquire()
		try:
			self.recorder.start()
			await asyncio.sleep(sample_seconds)
			sample = self.recorder.stop() or b""
		finally:
			# Keep the microphone when the preparation phase already holds it
			if not held:
				self.recorder.release()
		data = await self._call(self.api.test_microphone(sample))
		if data is None:
			return False
		self._render(message=MICROPHONE_OK_MESSAGE)
		return True

	async def submit(self) -> AttemptView:
		"""Student pressed submit before the time ran out."""
		await self._finalize()
		return self.view

	def request_leave(self) -> bool:
		"""True when leaving now needs a confirmation prompt.

		Leaving is never blocked: if the student goes anyway, the server's
		expiry check completes the attempt when its window elapses.
		"""
		return not self._finalized and self.phase().is_active

	async def handle_event(self, event: Dict[str, Any]) -> None:
		"""Push notification from the server; reconcile by re-fetching."""
		if event.get("participant_id") != self.participant_id:
			return
		await self.load()

	# ------------------------------------------------------------------
	# Timer and capture
	# ------------------------------------------------------------------

	async def tick(self) -> PhaseInfo:
		info = self.phase()
		if not self._finalized:
			if info.phase is Phase.PREPARATION:
				await self._ensure_mic()
			elif info.phase is Phase.RECORDING:
				await self._ensure_capture()
				await self._stream_audio()
			elif info.phase is Phase.EXPIRED:
				await self._finalize()
				return PhaseInfo(Phase.COMPLETED)
		shown = Phase.COMPLETED if self._finalized else info.phase
		remaining = None if info.remaining_seconds is None or self._finalized else math.ceil(info.remaining_seconds)
		self._render(phase=shown, remaining_seconds=remaining)
		return info

	def run(self) -> asyncio.Task:
		if self._timer is None or self._timer.done():
			self._timer = asyncio.create_task(self._run_timer())
		return self._timer

	async def _run_timer(self) -> None:
		while not self._finalized:
			info = await self.tick()
			if not info.is_active:
				break
			await asyncio.sleep(self.tick_seconds)

	async def wait(self) -> AttemptView:
		if self._timer is not None:
			await self._timer
		return self.view

	async def _ensure_mic(self) -> None:
		if not self._mic_acquired:
			await self.recorder.acquire()
			self._mic_acquired = True

	async def _ensure_capture(self) -> None:
		await self._ensure_mic()
		if not self._capturing:
			self.recorder.start()
			self._capturing = True

	def _stop_capture(self) -> Optional[bytes]:
		audio = None
		if self._capturing:
			audio = self.recorder.stop()
			self._capturing = False
		if self._mic_acquired:
			self.recorder.release()
			self._mic_acquired = False
		return audio

	def _discard_capture(self) -> None:
		self._stop_capture()
		self._pending = b""

	async def _stream_audio(self) -> None:
		"""Send what was captured since the last tick so a closed tab loses little."""
		if not self._streaming:
			return
		async with self._upload_lock:
			if not self._capturing:
				return
			chunk = self._pending + (self.recorder.drain() or b"")
			if not chunk:
				return
			try:
				await self.api.upload_chunk(self.participant_id, chunk)
			except httpx.HTTPError as e:
				# Kept for the next tick or the final submit
				logger.warning("Attempt %s: chunk upload failed: %s", self.participant_id, e)
				self._pending = chunk
				return
			except ApiError as e:
				# The rest of the recording goes with the final submit
				logger.warning("Attempt %s: chunk rejected (%s); streaming stopped", self.participant_id, e.code)
				self._pending = chunk
				self._streaming = False
				return
			self._pending = b""
			self.chunks_uploaded += 1

	async def _finalize(self) -> None:
		async with self._finalize_lock:
			if self._finalized:
				return
			self._finalized = True
			async with self._upload_lock:
				audio = self._pending + (self._stop_capture() or b"")
				self._pending = b""
			self.uploads += 1
			message = None
			stored: Optional[bool] = None
			try:
				result = await self.api.submit(self.participant_id, audio or None)
				stored = bool(result.get("artifact_stored"))
				if not stored:
					message = RECORDING_LOST_MESSAGE
			except ApiError as e:
				# A lost ack followed by a retry shows up as success server-side;
				# anything else means the recording did not make it
				logger.error("Attempt %s: upload rejected (%s)", self.participant_id, e.code)
				stored = False
				message = RECORDING_LOST_MESSAGE
			except httpx.HTTPError as e:
				logger.error("Attempt %s: upload failed: %s", self.participant_id, e)
				stored = False
				message = RECORDING_LOST_MESSAGE
			# The recording window is gone either way; never prompt to record again
			self._render(phase=Phase.COMPLETED, remaining_seconds=None, artifact_stored=stored, message=message)

	async def close(self) -> None:
		"""Tear the session down on page exit without uploading."""
		if self._timer is not None and not self._timer.done():
			self._timer.cancel()
			try:
				await self._timer
			except asyncio.CancelledError:
				pass
		self._discard_capture()
