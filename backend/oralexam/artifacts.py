"""Local file storage for recorded answers.

The participation core only deals in opaque references; a reference here is
a file name relative to the upload directory. Transcoding is left to whatever
processes the files afterwards.
"""

from __future__ import annotations
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import ArtifactStoreError, InvalidArtifact
from .settings import settings

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = (".webm", ".mp3", ".wav", ".ogg", ".m4a")
DEFAULT_EXTENSION = ".webm"


@dataclass(frozen=True)
class Artifact:
	data: bytes
	filename: str = "answer.webm"
	content_type: Optional[str] = None


@dataclass(frozen=True)
class ArtifactMetadata:
	exam_id: int
	student_id: int
	question_code: Optional[str] = None
	filename: str = "answer.webm"


def _safe_token(value: str) -> str:
	return re.sub(r"[^A-Za-z0-9_-]+", "-", value).strip("-") or "q"


class AudioStore:
	def __init__(self, base_dir: Optional[str | Path] = None, *, max_bytes: Optional[int] = None) -> None:
		self.base_dir = Path(base_dir or settings.audio_upload_dir)
		self.staging_dir = self.base_dir / "staging"
		self.max_bytes = max_bytes if max_bytes is not None else settings.max_audio_bytes
		self.base_dir.mkdir(parents=True, exist_ok=True)
		self.staging_dir.mkdir(parents=True, exist_ok=True)

	def _extension(self, filename: str) -> str:
		ext = Path(filename or "").suffix.lower() or DEFAULT_EXTENSION
		if ext not in AUDIO_EXTENSIONS:
			raise InvalidArtifact(f"Unsupported audio format {ext}; expected one of {', '.join(AUDIO_EXTENSIONS)}")
		return ext

	def _check_size(self, size: int) -> None:
		if size == 0:
			raise InvalidArtifact("The recording is empty")
		if size > self.max_bytes:
			raise InvalidArtifact(f"The recording exceeds the {self.max_bytes // (1024 * 1024)} MB limit")

	def build_name(self, metadata: ArtifactMetadata) -> str:
		code = _safe_token(metadata.question_code or "q")
		stamp = int(time.time() * 1000)
		ext = self._extension(metadata.filename)
		return f"exam_{metadata.exam_id}_student_{metadata.student_id}_{code}_{stamp}{ext}"

	def validate(self, data: bytes, filename: str) -> str:
		"""Apply the storage rules without writing anything; returns the extension."""
		self._check_size(len(data))
		return self._extension(filename)

	def store(self, data: bytes, metadata: ArtifactMetadata) -> str:
		"""Write ``data`` to the upload directory and return its reference."""
		self._check_size(len(data))
		name = self.build_name(metadata)
		target = self.base_dir / name
		tmp = target.with_suffix(target.suffix + ".tmp")
		try:
			tmp.write_bytes(data)
			os.replace(tmp, target)
		except OSError as e:
			tmp.unlink(missing_ok=True)
			raise ArtifactStoreError(f"The recording could not be saved: {e.strerror or e}") from e
		logger.info("Stored audio %s (%d bytes)", name, len(data))
		return name

	def resolve(self, ref: str) -> Path:
		if not ref or Path(ref).name != ref:
			raise ArtifactStoreError(f"Invalid artifact reference {ref!r}")
		return self.base_dir / ref

	def exists(self, ref: Optional[str]) -> bool:
		return bool(ref) and self.resolve(ref).is_file()

	def delete(self, ref: Optional[str]) -> bool:
		if not ref:
			return False
		path = self.resolve(ref)
		try:
			path.unlink()
		except FileNotFoundError:
			return False
		logger.info("Deleted audio %s", ref)
		return True

	# ------------------------------------------------------------------
	# Staging: audio captured during recording, held until submit or expiry
	# ------------------------------------------------------------------

	def _staged_path(self, participant_id: int) -> Path:
		return self.staging_dir / f"participant_{int(participant_id)}.part"

	def append_staged(self, participant_id: int, chunk: bytes) -> int:
		"""Append ``chunk`` and return the total number of staged bytes."""
		path = self._staged_path(participant_id)
		current = path.stat().st_size if path.exists() else 0
		if current + len(chunk) > self.max_bytes:
			raise InvalidArtifact(f"The recording exceeds the {self.max_bytes // (1024 * 1024)} MB limit")
		try:
			with open(path, "ab") as f:
				f.write(chunk)
		except OSError as e:
			raise ArtifactStoreError(f"The recording could not be buffered: {e.strerror or e}") from e
		return current + len(chunk)

	def read_staged(self, participant_id: int) -> Optional[bytes]:
		path = self._staged_path(participant_id)
		if not path.exists():
			return None
		data = path.read_bytes()
		return data or None

	def discard_staged(self, participant_id: int) -> bool:
		path = self._staged_path(participant_id)
		try:
			path.unlink()
		except FileNotFoundError:
			return False
		return True

	def staged_participant_ids(self) -> list[int]:
		ids = []
		for path in self.staging_dir.glob("participant_*.part"):
			try:
				ids.append(int(path.stem.split("_", 1)[1]))
			except (IndexError, ValueError):
				logger.warning("Ignoring unexpected staging file %s", path.name)
		return sorted(ids)
