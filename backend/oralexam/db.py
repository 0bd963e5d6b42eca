from __future__ import annotations
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./oralexam.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


# Best-effort lightweight migrations for development (SQLite-friendly)
def ensure_schema() -> None:
	try:
		inspector = inspect(engine)
		tables = set(inspector.get_table_names())
	except Exception:
		return
	if "exam_participants" in tables:
		cols = {c["name"] for c in inspector.get_columns("exam_participants")}
		with engine.begin() as conn:
			if "recording_start_time" not in cols:
				conn.exec_driver_sql("ALTER TABLE exam_participants ADD COLUMN recording_start_time DATETIME")
			if "question_code" not in cols:
				conn.exec_driver_sql("ALTER TABLE exam_participants ADD COLUMN question_code VARCHAR(64)")
			if "question_content_ref" not in cols:
				conn.exec_driver_sql("ALTER TABLE exam_participants ADD COLUMN question_content_ref VARCHAR(1024)")
