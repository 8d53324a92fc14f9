"""
Admin management of timed exams. Questions are embedded in the exam
document in display order, and an exam's total marks always equal the sum
of its questions' marks.
"""

import logging

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import COL_EXAM, COL_PRODUCT, id_filter, serialize_doc, to_object_id, utcnow
from errors import NotFound, ValidationError
from schemas import ADMIN_ROLES, ExamInput
from security import authorize

logger = logging.getLogger(__name__)


def _exam_fields(db: Database, payload: ExamInput) -> dict:
    total_marks = sum(q.marks for q in payload.questions)
    if payload.passing_marks > total_marks:
        raise ValidationError("Passing marks cannot exceed total marks")
    if payload.product_id and db[COL_PRODUCT].find_one(id_filter(payload.product_id)) is None:
        raise ValidationError(f"Product {payload.product_id} not found")
    fields = payload.model_dump(exclude={"questions"})
    fields["total_marks"] = total_marks
    fields["questions"] = [
        {**q.model_dump(), "order": i} for i, q in enumerate(payload.questions, start=1)
    ]
    return fields


def list_exams(db: Database, actor: dict) -> list[dict]:
    authorize(actor["role"], ADMIN_ROLES)
    cursor = db[COL_EXAM].find({}, {"questions": 0}).sort("created_at", DESCENDING)
    return [serialize_doc(e) for e in cursor]


def _find_exam(db: Database, exam_id: str) -> dict:
    oid = to_object_id(exam_id)
    exam = db[COL_EXAM].find_one({"_id": oid}) if oid else None
    if exam is None:
        raise NotFound("Exam not found")
    return exam


def get_exam(db: Database, actor: dict, exam_id: str) -> dict:
    authorize(actor["role"], ADMIN_ROLES)
    return serialize_doc(_find_exam(db, exam_id))


def create_exam(db: Database, actor: dict, payload: ExamInput) -> dict:
    authorize(actor["role"], ADMIN_ROLES)
    now = utcnow()
    doc = {**_exam_fields(db, payload), "status": "DRAFT", "created_at": now, "updated_at": now}
    doc["_id"] = db[COL_EXAM].insert_one(doc).inserted_id
    logger.info("Exam %r created by %s", payload.title, actor["id"])
    return serialize_doc(doc)


def update_exam(db: Database, actor: dict, exam_id: str, payload: ExamInput) -> dict:
    """Replace an exam's fields and its whole question list; status is kept."""
    authorize(actor["role"], ADMIN_ROLES)
    exam = _find_exam(db, exam_id)
    updated = db[COL_EXAM].find_one_and_update(
        {"_id": exam["_id"]},
        {"$set": {**_exam_fields(db, payload), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Exam not found")
    return serialize_doc(updated)


def set_exam_status(db: Database, actor: dict, exam_id: str, status: str) -> dict:
    authorize(actor["role"], ADMIN_ROLES)
    exam = _find_exam(db, exam_id)
    updated = db[COL_EXAM].find_one_and_update(
        {"_id": exam["_id"]},
        {"$set": {"status": status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Exam not found")
    logger.info("Exam %s status set to %s by %s", exam_id, status, actor["id"])
    return serialize_doc(updated)


def delete_exam(db: Database, actor: dict, exam_id: str) -> None:
    authorize(actor["role"], ADMIN_ROLES)
    exam = _find_exam(db, exam_id)
    db[COL_EXAM].delete_one({"_id": exam["_id"]})
    logger.info("Exam %s deleted by %s", exam_id, actor["id"])
