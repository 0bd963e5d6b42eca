from typing import Optional

from fastapi import Request, UploadFile

from ..artifacts import Artifact
from ..errors import Forbidden, InvalidArtifact
from ..participants import ParticipantSnapshot
from ..state_machine import ParticipationStateMachine

READ_BLOCK = 64 * 1024


def get_machine(request: Request) -> ParticipationStateMachine:
	return request.app.state.machine


def read_limited(upload: UploadFile, max_bytes: int) -> bytes:
	"""Read ``upload`` in blocks, rejecting it as soon as it exceeds ``max_bytes``."""
	data = bytearray()
	while True:
		block = upload.file.read(READ_BLOCK)
		if not block:
			break
		data.extend(block)
		if len(data) > max_bytes:
			raise InvalidArtifact(f"The recording exceeds the {max_bytes // (1024 * 1024)} MB limit")
	return bytes(data)


def read_upload(upload: Optional[UploadFile], max_bytes: int) -> Optional[Artifact]:
	if upload is None:
		return None
	data = read_limited(upload, max_bytes)
	if not data:
		return None
	return Artifact(data=data, filename=upload.filename or "answer.webm", content_type=upload.content_type)


def owned_participant(machine: ParticipationStateMachine, participant_id: int, student_id: int) -> ParticipantSnapshot:
	snapshot = machine.get_participant(participant_id)
	if snapshot.student_id != student_id:
		raise Forbidden()
	return snapshot


def question_view(snapshot: ParticipantSnapshot) -> Optional[dict]:
	if snapshot.question_id is None:
		return None
	return {"id": snapshot.question_id, "code": snapshot.question_code, "content_ref": snapshot.question_content_ref}
