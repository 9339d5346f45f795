"""
board.py — Q&A message board.

Employees post questions about a job site; anyone can answer. An answer
from an administrator is marked official. Every answer notifies the asker
with a ``company`` alert addressed to them alone (recipients=specific),
delivered through the regular fan-out so the asker's preferences and
channel settings still apply.

Posting the answer and notifying the asker are separate steps: the answer
is committed first, and a failed notification is logged without undoing it.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts import directory
from skyguard.alerts.alert_service import send_system_alert
from skyguard.alerts.models import (
    AlertPriority,
    AlertType,
    RecipientTarget,
    UserRole,
    isoformat,
)
from skyguard.alerts.sanitize import sanitize_text, validate_message, validate_title
from skyguard.core.errors import NotFoundError, SkyGuardError, ValidationError
from skyguard.core.tables import Profile, QAAnswerRow, QAQuestionRow

logger = logging.getLogger(__name__)


class QuestionCategory(str, Enum):
    SAFETY     = "safety"
    EQUIPMENT  = "equipment"
    PROCEDURES = "procedures"
    GENERAL    = "general"


class QuestionPriority(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"
    URGENT = "urgent"


class QuestionStatus(str, Enum):
    OPEN     = "open"
    ANSWERED = "answered"
    CLOSED   = "closed"


def _choice(enum_cls: Any, value: Any, default: Enum, field: str) -> str:
    if value is None or value == "":
        return default.value
    try:
        return enum_cls(value).value
    except ValueError:
        raise ValidationError(
            f"Invalid {field}: {value!r}", field=field, allowed=[m.value for m in enum_cls],
        )


def question_to_dict(
    row: QAQuestionRow, *, asker: Optional[str] = None, answer_count: int = 0
) -> Dict[str, Any]:
    return {
        "id": row.id,
        "title": row.title,
        "question": row.question,
        "category": row.category,
        "priority": row.priority,
        "status": row.status,
        "job_site": row.job_site,
        "job_number": row.job_number,
        "asked_by": row.asked_by,
        "asker_username": asker,
        "answer_count": answer_count,
        "created_at": isoformat(row.created_at),
        "updated_at": isoformat(row.updated_at),
    }


def answer_to_dict(row: QAAnswerRow, *, answerer: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": row.id,
        "question_id": row.question_id,
        "answer": row.answer,
        "answered_by": row.answered_by,
        "answerer_username": answerer,
        "is_official": row.is_official,
        "created_at": isoformat(row.created_at),
    }


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------

async def list_questions(
    session: AsyncSession,
    *,
    status: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Questions newest first, with the asker's username and answer count."""
    answers = (
        select(QAAnswerRow.question_id, func.count(QAAnswerRow.id).label("n"))
        .group_by(QAAnswerRow.question_id)
        .subquery()
    )
    stmt = (
        select(QAQuestionRow, Profile.username, answers.c.n)
        .outerjoin(Profile, Profile.user_id == QAQuestionRow.asked_by)
        .outerjoin(answers, answers.c.question_id == QAQuestionRow.id)
        .order_by(QAQuestionRow.created_at.desc())
        .limit(limit)
    )
    if status:
        stmt = stmt.where(QAQuestionRow.status == _choice(QuestionStatus, status, QuestionStatus.OPEN, "status"))
    if category:
        stmt = stmt.where(
            QAQuestionRow.category == _choice(QuestionCategory, category, QuestionCategory.GENERAL, "category")
        )
    if search:
        pattern = f"%{search.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(QAQuestionRow.title).like(pattern),
                func.lower(QAQuestionRow.question).like(pattern),
            )
        )

    result = await session.execute(stmt)
    return [
        question_to_dict(row, asker=username, answer_count=n or 0)
        for row, username, n in result.all()
    ]


async def _get_question(session: AsyncSession, question_id: str) -> QAQuestionRow:
    row = await session.get(QAQuestionRow, question_id)
    if row is None:
        raise NotFoundError("Question", question_id=question_id)
    return row


async def get_question(session: AsyncSession, question_id: str) -> Dict[str, Any]:
    """One question with its answers, oldest answer first."""
    row = await _get_question(session, question_id)
    asker = await directory.get_profile(session, row.asked_by)
    result = await session.execute(
        select(QAAnswerRow, Profile.username)
        .outerjoin(Profile, Profile.user_id == QAAnswerRow.answered_by)
        .where(QAAnswerRow.question_id == question_id)
        .order_by(QAAnswerRow.created_at.asc())
    )
    answers = [answer_to_dict(a, answerer=username) for a, username in result.all()]
    data = question_to_dict(
        row, asker=asker.username if asker else None, answer_count=len(answers),
    )
    data["answers"] = answers
    return data


async def ask_question(
    session: AsyncSession, data: Mapping[str, Any], asked_by: str
) -> QAQuestionRow:
    row = QAQuestionRow(
        asked_by=asked_by,
        title=validate_title(data.get("title")),
        question=validate_message(data.get("question")),
        category=_choice(QuestionCategory, data.get("category"), QuestionCategory.GENERAL, "category"),
        priority=_choice(QuestionPriority, data.get("priority"), QuestionPriority.MEDIUM, "priority"),
        status=QuestionStatus.OPEN.value,
        job_site=sanitize_text(data.get("job_site"))[:100] or None,
        job_number=sanitize_text(data.get("job_number"))[:50] or None,
    )
    session.add(row)
    await session.flush()
    logger.info("Question %s posted by %s (%s/%s)", row.id, asked_by, row.category, row.priority)
    return row


# ---------------------------------------------------------------------------
# Answers
# ---------------------------------------------------------------------------

def answer_notification(
    question: QAQuestionRow, answer_text: str, answerer: Optional[str], *, official: bool
) -> Dict[str, Any]:
    """Title, message and priority of the alert sent to the asker."""
    if official:
        title = f"✅ Official Answer to Your Question: {question.title}"
        verb = "officially answered"
    else:
        title = f"💬 New Response to Your Question: {question.title}"
        verb = "responded to"

    job_info = ""
    if question.job_site or question.job_number:
        job_info = "\n\nJob Details:"
        if question.job_site:
            job_info += f"\nSite: {question.job_site}"
        if question.job_number:
            job_info += f"\nJob #: {question.job_number}"

    message = (
        f"Your question has been {verb}!\n\n"
        f"Original Question:\n\"{question.question}\"\n\n"
        f"Answer by {answerer or 'Unknown'}:\n\"{answer_text}\""
        f"{job_info}\n\n"
        f"Category: {question.category}\n"
        f"Priority: {question.priority}"
    )
    return {
        "title": title,
        "message": message,
        "priority": AlertPriority.HIGH if official else AlertPriority.MEDIUM,
    }


async def answer_question(
    session: AsyncSession, question_id: str, answer: str, answered_by: str
) -> Dict[str, Any]:
    """
    Post an answer and notify the asker.

    Returns
    -------
    dict
        The stored answer plus ``notified`` (recipient count of the alert,
        0 when the asker opted out or the notification failed).
    """
    text = validate_message(answer)
    question = await _get_question(session, question_id)
    answerer = await directory.get_user(session, answered_by)
    official = answerer is not None and answerer.role == UserRole.ADMIN

    row = QAAnswerRow(
        question_id=question_id,
        answered_by=answered_by,
        answer=text,
        is_official=official,
    )
    session.add(row)
    if question.status == QuestionStatus.OPEN.value:
        question.status = QuestionStatus.ANSWERED.value
    await session.commit()

    notified = 0
    note = answer_notification(
        question, text, answerer.username if answerer else None, official=official,
    )
    try:
        result = await send_system_alert(
            session,
            title=note["title"],
            message=note["message"],
            alert_type=AlertType.COMPANY,
            priority=note["priority"],
            recipients=RecipientTarget.SPECIFIC,
            specific_user_ids=[question.asked_by],
            sent_by=answered_by,
        )
        notified = result.recipient_count
    except SkyGuardError:
        logger.exception("Answer notification for question %s failed", question_id)

    data = answer_to_dict(row, answerer=answerer.username if answerer else None)
    data["notified"] = notified
    return data
