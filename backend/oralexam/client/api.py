from __future__ import annotations
import httpx
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from ..settings import settings


class ApiError(Exception):
	"""A request the server rejected with a business error."""

	def __init__(self, status_code: int, code: str, message: str) -> None:
		super().__init__(message)
		self.status_code = status_code
		self.code = code
		self.message = message

	@property
	def is_precondition(self) -> bool:
		# State moved on under the client; reload instead of retrying
		return self.status_code == 409 and self.code != "NO_QUESTIONS"


def parse_time(value: Optional[str]) -> Optional[datetime]:
	if not value:
		return None
	parsed = datetime.fromisoformat(value)
	if parsed.tzinfo is not None:
		parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
	return parsed


class ExamApiClient:
	"""Student-side HTTP client for one exam server.

	Uses a single fixed timeout and never retries on its own: every retry is a
	user decision, so side-effecting calls are not duplicated behind their back.
	"""

	def __init__(
		self,
		base_url: str,
		*,
		token: Optional[str] = None,
		timeout: Optional[float] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.base_url = base_url.rstrip("/")
		self.token = token
		self._client = httpx.AsyncClient(
			base_url=self.base_url,
			timeout=timeout if timeout is not None else settings.client_timeout_seconds,
			transport=transport,
		)

	def _headers(self) -> Dict[str, str]:
		return {"Authorization": f"Bearer {self.token}"} if self.token else {}

	async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
		r = await self._client.request(method, path, headers=self._headers(), **kwargs)
		if r.status_code >= 400:
			try:
				body = r.json()
			except ValueError:
				body = {}
			detail = body.get("detail") if isinstance(body, dict) else None
			raise ApiError(r.status_code, (body or {}).get("code", "HTTP_ERROR"), detail if isinstance(detail, str) else r.text)
		return r.json()

	async def login(self, student_code: str, password: str) -> str:
		data = await self._request("POST", "/auth/student/token", data={"username": student_code, "password": password})
		self.token = data["access_token"]
		return self.token

	async def server_time(self) -> datetime:
		data = await self._request("GET", "/system/time")
		return parse_time(data["server_time"])

	async def get_attempt(self, participant_id: int) -> Dict[str, Any]:
		return await self._request("GET", f"/student/exam/{participant_id}")

	async def draw_question(self, participant_id: int) -> Dict[str, Any]:
		return await self._request("POST", f"/student/exam/{participant_id}/draw-question")

	async def start(self, participant_id: int, skip_preparation: bool = False) -> Dict[str, Any]:
		return await self._request("POST", f"/student/exam/{participant_id}/start", json={"skip_preparation": skip_preparation})

	async def begin_recording(self, participant_id: int) -> Dict[str, Any]:
		return await self._request("POST", f"/student/exam/{participant_id}/begin-recording")

	async def upload_chunk(self, participant_id: int, chunk: bytes) -> Dict[str, Any]:
		files = {"chunk": ("chunk.webm", chunk, "audio/webm")}
		return await self._request("POST", f"/student/exam/{participant_id}/audio-chunk", files=files)

	async def submit(self, participant_id: int, audio: Optional[bytes], filename: str = "answer.webm") -> Dict[str, Any]:
		files = {"audio": (filename, audio, "audio/webm")} if audio else None
		return await self._request("POST", f"/student/exam/{participant_id}/submit", files=files)

	async def test_microphone(self, audio: bytes, filename: str = "sample.webm") -> Dict[str, Any]:
		files = {"audio": (filename, audio, "audio/webm")}
		return await self._request("POST", "/student/test-microphone", files=files)

	async def aclose(self) -> None:
		await self._client.aclose()
