"""
FastAPI route: Q&A message board.

    GET  /api/v1/qa/questions                  — list, filter by status / category / text
    POST /api/v1/qa/questions                  — ask
    GET  /api/v1/qa/questions/{id}             — question with answers
    POST /api/v1/qa/questions/{id}/answers     — answer; notifies the asker
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from skyguard.alerts.models import UserRecord
from skyguard.api.deps import get_current_user
from skyguard.api.schemas import AnswerCreate, QuestionCreate
from skyguard.core.database import get_db
from skyguard.qa import board

router = APIRouter(prefix="/api/v1/qa", tags=["qa"])


@router.get("/questions", summary="List questions")
async def list_questions(
    status: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    _user: UserRecord = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    questions = await board.list_questions(
        session, status=status, category=category, search=search,
    )
    return {"questions": questions}


@router.post("/questions", status_code=201, summary="Ask a question")
async def ask_question(
    body: QuestionCreate,
    user: UserRecord = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    row = await board.ask_question(session, body.model_dump(), user.user_id)
    return board.question_to_dict(row, asker=user.username)


@router.get("/questions/{question_id}", summary="Question with answers")
async def get_question(
    question_id: str,
    _user: UserRecord = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    return await board.get_question(session, question_id)


@router.post("/questions/{question_id}/answers", status_code=201, summary="Answer a question")
async def answer_question(
    question_id: str,
    body: AnswerCreate,
    user: UserRecord = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    return await board.answer_question(session, question_id, body.answer, user.user_id)
