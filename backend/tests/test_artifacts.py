import pytest

from oralexam.artifacts import ArtifactMetadata, AudioStore
from oralexam.errors import ArtifactStoreError, InvalidArtifact


def _meta(filename='answer.webm', code='Q 1/a'):
	return ArtifactMetadata(exam_id=3, student_id=7, question_code=code, filename=filename)


def test_store_writes_file_with_descriptive_name(store):
	ref = store.store(b'audio-bytes', _meta())
	assert ref.startswith('exam_3_student_7_Q-1-a_')
	assert ref.endswith('.webm')
	assert store.resolve(ref).read_bytes() == b'audio-bytes'
	assert not list(store.base_dir.glob('*.tmp'))


def test_store_keeps_supported_extension(store):
	assert store.store(b'x', _meta('take.wav')).endswith('.wav')


def test_store_rejects_unknown_format(store):
	with pytest.raises(InvalidArtifact):
		store.store(b'x', _meta('notes.txt'))


def test_store_rejects_empty_and_oversized(tmp_path):
	small = AudioStore(tmp_path / 'small', max_bytes=4)
	with pytest.raises(InvalidArtifact):
		small.store(b'', _meta())
	with pytest.raises(InvalidArtifact):
		small.store(b'12345', _meta())


def test_resolve_rejects_path_traversal(store):
	with pytest.raises(ArtifactStoreError):
		store.resolve('../secrets.webm')


def test_delete_is_tolerant_of_missing_files(store):
	ref = store.store(b'x', _meta())
	assert store.delete(ref)
	assert not store.delete(ref)
	assert not store.delete(None)


def test_staging_accumulates_and_discards(store):
	assert store.append_staged(5, b'ab') == 2
	assert store.append_staged(5, b'cd') == 4
	assert store.read_staged(5) == b'abcd'
	assert store.staged_participant_ids() == [5]
	assert store.discard_staged(5)
	assert store.read_staged(5) is None
	assert store.staged_participant_ids() == []


def test_staging_enforces_size_limit(tmp_path):
	small = AudioStore(tmp_path / 'small', max_bytes=4)
	small.append_staged(1, b'abc')
	with pytest.raises(InvalidArtifact):
		small.append_staged(1, b'de')
