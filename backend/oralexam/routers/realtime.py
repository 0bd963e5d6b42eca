from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status
import asyncio
import json
import logging

from ..errors import ExamNotFound, Forbidden
from ..notifier import Notifier, Subscription, student_channel, supervisor_channel
from ..participants import get_exam_row
from .auth import ROLE_STUDENT, ROLE_SUPERVISOR, Principal, decode_token

router = APIRouter(tags=["realtime"])
logger = logging.getLogger(__name__)


def _authenticate(websocket: WebSocket, role: str) -> Principal:
	token = websocket.query_params.get("token") or ""
	machine = websocket.app.state.machine
	with machine.session_factory() as db:
		principal = decode_token(token, db)
	if principal.role != role:
		raise Forbidden()
	return principal


async def _forward(websocket: WebSocket, sub: Subscription) -> None:
	while True:
		event = await sub.get()
		await websocket.send_json(event)


async def _receive(websocket: WebSocket) -> None:
	while True:
		data = await websocket.receive_text()
		try:
			message = json.loads(data)
		except ValueError:
			await websocket.send_json({"type": "error", "detail": "Messages must be JSON"})
			continue
		if message.get("type") == "ping":
			await websocket.send_json({"type": "pong"})


async def _serve(websocket: WebSocket, notifier: Notifier, channel: str) -> None:
	sub = notifier.subscribe(channel)
	tasks = []
	try:
		await websocket.send_json({"type": "subscribed", "channel": channel})
		tasks = [
			asyncio.create_task(_forward(websocket, sub)),
			asyncio.create_task(_receive(websocket)),
		]
		# Either side stopping ends the connection
		await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
	finally:
		for task in tasks:
			task.cancel()
		for task in tasks:
			try:
				await task
			except (asyncio.CancelledError, WebSocketDisconnect):
				pass
			except Exception:
				logger.exception("Event stream on %s failed", channel)
		sub.close()
		logger.debug("Observer left %s", channel)


@router.websocket("/ws/student")
async def student_events(websocket: WebSocket):
	"""Push changes of the student's own attempts."""
	try:
		principal = _authenticate(websocket, ROLE_STUDENT)
	except (HTTPException, Forbidden):
		await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
		return
	await websocket.accept()
	await _serve(websocket, websocket.app.state.machine.notifier, student_channel(principal.id))


@router.websocket("/ws/supervisor/exams/{exam_id}")
async def supervisor_events(websocket: WebSocket, exam_id: int):
	"""Push changes of every attempt in one exam."""
	machine = websocket.app.state.machine
	try:
		_authenticate(websocket, ROLE_SUPERVISOR)
		with machine.session_factory() as db:
			get_exam_row(db, exam_id)
	except (HTTPException, Forbidden, ExamNotFound) as e:
		logger.info("Rejected supervisor subscription to exam %s: %s", exam_id, e)
		await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
		return
	await websocket.accept()
	await _serve(websocket, machine.notifier, supervisor_channel(exam_id))
