from __future__ import annotations
import random
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .errors import DuplicateRecord, ExamNotFound, QuestionInUse, QuestionNotFound
from .models import Exam, ExamParticipant, ExamQuestion


def active_questions(db: Session, exam_id: int) -> List[ExamQuestion]:
	return (
		db.query(ExamQuestion)
		.filter(ExamQuestion.exam_id == exam_id, ExamQuestion.active.is_(True))
		.order_by(ExamQuestion.id)
		.all()
	)


def pick_random_question(db: Session, exam_id: int, rng: Optional[random.Random] = None) -> Optional[ExamQuestion]:
	"""Uniformly pick one active question of the exam, or None when there is none.

	Read-only: drawing never changes the pool.
	"""
	candidates = active_questions(db, exam_id)
	if not candidates:
		return None
	return (rng or random).choice(candidates)


def add_question(db: Session, exam_id: int, code: str, content_ref: str, active: bool = True) -> ExamQuestion:
	if db.get(Exam, exam_id) is None:
		raise ExamNotFound(exam_id)
	code = (code or "").strip()
	existing = db.query(ExamQuestion).filter(ExamQuestion.exam_id == exam_id, ExamQuestion.code == code).first()
	if existing:
		raise DuplicateRecord(f"Question code {code} already exists in this exam")
	row = ExamQuestion(exam_id=exam_id, code=code, content_ref=content_ref, active=active)
	db.add(row)
	db.commit()
	db.refresh(row)
	return row


def add_questions(db: Session, exam_id: int, items: List[Dict[str, Any]]) -> Dict[str, Any]:
	success = 0
	failed = 0
	errors: List[Dict[str, Any]] = []
	for item in items:
		try:
			add_question(db, exam_id, item["code"], item["content_ref"], item.get("active", True))
			success += 1
		except DuplicateRecord as e:
			db.rollback()
			failed += 1
			errors.append({"code": item.get("code"), "error": e.message})
	return {"success": success, "failed": failed, "errors": errors}


def get_question(db: Session, question_id: int) -> ExamQuestion:
	row = db.get(ExamQuestion, question_id)
	if row is None:
		raise QuestionNotFound(question_id)
	return row


def update_question(
	db: Session,
	question_id: int,
	*,
	code: Optional[str] = None,
	content_ref: Optional[str] = None,
	active: Optional[bool] = None,
) -> ExamQuestion:
	# Participants keep their own snapshot of code/content_ref, so edits never
	# reach an attempt that already drew this question.
	row = get_question(db, question_id)
	if code is not None and code != row.code:
		clash = (
			db.query(ExamQuestion)
			.filter(ExamQuestion.exam_id == row.exam_id, ExamQuestion.code == code, ExamQuestion.id != row.id)
			.first()
		)
		if clash:
			raise DuplicateRecord(f"Question code {code} already exists in this exam")
		row.code = code
	if content_ref is not None:
		row.content_ref = content_ref
	if active is not None:
		row.active = active
	db.add(row)
	db.commit()
	db.refresh(row)
	return row


def delete_question(db: Session, question_id: int) -> None:
	row = get_question(db, question_id)
	used = db.query(ExamParticipant).filter(ExamParticipant.question_id == question_id).first()
	if used is not None:
		raise QuestionInUse(question_id)
	db.delete(row)
	db.commit()


def list_questions(db: Session, exam_id: int, active_only: bool = False) -> List[ExamQuestion]:
	q = db.query(ExamQuestion).filter(ExamQuestion.exam_id == exam_id)
	if active_only:
		q = q.filter(ExamQuestion.active.is_(True))
	return q.order_by(ExamQuestion.code).all()


def question_usage(db: Session, exam_id: int) -> List[Dict[str, Any]]:
	"""Every question of the exam with the number of attempts that drew it."""
	rows = (
		db.query(ExamQuestion, func.count(ExamParticipant.id))
		.outerjoin(ExamParticipant, ExamParticipant.question_id == ExamQuestion.id)
		.filter(ExamQuestion.exam_id == exam_id)
		.group_by(ExamQuestion.id)
		.order_by(func.count(ExamParticipant.id).desc(), ExamQuestion.code.asc())
		.all()
	)
	return [{"question": question_to_dict(q), "usage_count": count} for q, count in rows]


def question_to_dict(row: ExamQuestion) -> Dict[str, Any]:
	return {
		"id": row.id,
		"exam_id": row.exam_id,
		"code": row.code,
		"content_ref": row.content_ref,
		"active": bool(row.active),
	}
