"""
Oral exam server - test configuration and fixtures
"""
import os
import random
import tempfile
from datetime import datetime, timedelta

import pytest

# Set testing environment before the package reads its settings
_TMP = tempfile.mkdtemp(prefix="oralexam-tests-")
os.environ['DATABASE_URL'] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ['AUDIO_UPLOAD_DIR'] = os.path.join(_TMP, 'audio')
os.environ['JWT_SECRET_KEY'] = 'test-jwt-secret-key-for-testing'
os.environ['EXPIRY_SWEEP_SECONDS'] = '0'
os.environ['EXPIRY_GRACE_SECONDS'] = '5'

from fastapi.testclient import TestClient

from oralexam.artifacts import AudioStore
from oralexam.db import Base, SessionLocal, engine
from oralexam.main import app
from oralexam.models import Exam, ExamQuestion, Student, Supervisor
from oralexam.notifier import Notifier
from oralexam.routers.auth import hash_password
from oralexam.state_machine import ParticipationStateMachine

STUDENT_PASSWORD = 'student-pass-123'
SUPERVISOR_PASSWORD = 'supervisor-pass-123'


class FakeClock:
	"""Settable clock; tests move time explicitly."""

	def __init__(self, start: datetime) -> None:
		self.current = start

	def __call__(self) -> datetime:
		return self.current

	def advance(self, seconds: float) -> datetime:
		self.current = self.current + timedelta(seconds=seconds)
		return self.current


@pytest.fixture(autouse=True)
def fresh_schema():
	"""Create a fresh database for each test"""
	Base.metadata.create_all(bind=engine)
	yield
	Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FakeClock:
	return FakeClock(datetime(2024, 5, 6, 9, 0, 0))


@pytest.fixture
def store(tmp_path) -> AudioStore:
	return AudioStore(tmp_path / 'audio', max_bytes=1024 * 1024)


@pytest.fixture
def notifier() -> Notifier:
	return Notifier(queue_size=10)


@pytest.fixture
def machine(clock, store, notifier):
	"""State machine wired to the test clock, installed on the app"""
	previous = app.state.machine
	m = ParticipationStateMachine(
		session_factory=SessionLocal,
		artifacts=store,
		notifier=notifier,
		clock=clock,
		rng=random.Random(7),
	)
	app.state.machine = m
	yield m
	app.state.machine = previous


@pytest.fixture
def db():
	session = SessionLocal()
	yield session
	session.close()


@pytest.fixture
def make_exam(db):
	def _make(name='Oral exam', preparation_seconds=60, recording_seconds=300) -> Exam:
		exam = Exam(name=name, preparation_seconds=preparation_seconds, recording_seconds=recording_seconds)
		db.add(exam)
		db.commit()
		db.refresh(exam)
		return exam
	return _make


@pytest.fixture
def make_student(db):
	def _make(code='S001', full_name='Ada Student') -> Student:
		student = Student(student_code=code, full_name=full_name, password_hash=hash_password(STUDENT_PASSWORD))
		db.add(student)
		db.commit()
		db.refresh(student)
		return student
	return _make


@pytest.fixture
def add_questions(db):
	def _add(exam: Exam, *codes: str, active=True) -> list:
		rows = []
		for code in codes:
			row = ExamQuestion(exam_id=exam.id, code=code, content_ref=f"https://docs.example.org/{code}", active=active)
			db.add(row)
			rows.append(row)
		db.commit()
		for row in rows:
			db.refresh(row)
		return rows
	return _add


@pytest.fixture
def exam(make_exam, add_questions):
	"""Exam with 60s preparation, 300s recording and three questions"""
	e = make_exam()
	add_questions(e, 'Q1', 'Q2', 'Q3')
	return e


@pytest.fixture
def student(make_student):
	return make_student()


@pytest.fixture
def participant(machine, exam, student):
	return machine.create_participant(exam.id, student.id)


@pytest.fixture
def supervisor(db) -> Supervisor:
	row = Supervisor(username='proctor', full_name='Pat Proctor', password_hash=hash_password(SUPERVISOR_PASSWORD))
	db.add(row)
	db.commit()
	db.refresh(row)
	return row


@pytest.fixture
def client(machine) -> TestClient:
	return TestClient(app)


@pytest.fixture
def student_headers(client, student) -> dict:
	response = client.post('/auth/student/token', data={'username': student.student_code, 'password': STUDENT_PASSWORD})
	assert response.status_code == 200
	return {'Authorization': f"Bearer {response.json()['access_token']}"}


@pytest.fixture
def supervisor_headers(client, supervisor) -> dict:
	response = client.post('/auth/supervisor/token', data={'username': supervisor.username, 'password': SUPERVISOR_PASSWORD})
	assert response.status_code == 200
	return {'Authorization': f"Bearer {response.json()['access_token']}"}
