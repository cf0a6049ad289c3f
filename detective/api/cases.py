"""
Case content and answer checking API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List
import logging

from detective.database import get_db
from detective.dependencies import get_case_repository
from detective.schemas.case import (
    AnswerCheckRequest,
    AnswerCheckResponse,
    CaseData,
    CasesResponse,
    CaseSummary,
    QuestionData,
    TotalQuestionsResponse,
)
from detective.services.case_repository import CaseRepository
from detective.services.coin_service import CoinLedger
from detective.services.hit_detection import (
    ClickPoint,
    ContainerBox,
    ImageNotMeasuredError,
    ImageSize,
    check_answer,
)
from detective.services.progress_service import ProgressService

router = APIRouter(prefix="/api/cases", tags=["cases"])
logger = logging.getLogger(__name__)


@router.get("", response_model=CasesResponse)
async def list_cases(repository: CaseRepository = Depends(get_case_repository)):
    """All approved cases with questions and answer regions, ordered by id"""
    return CasesResponse(cases=await repository.get_cases())


@router.get("/summary", response_model=List[CaseSummary])
async def list_case_summaries(repository: CaseRepository = Depends(get_case_repository)):
    """Id, title and image only - for the first paint of the case list"""
    return await repository.get_cases_list_only()


@router.get("/stats/total-questions", response_model=TotalQuestionsResponse)
async def total_questions(repository: CaseRepository = Depends(get_case_repository)):
    return TotalQuestionsResponse(total_questions=await repository.get_total_questions_count())


@router.get("/{case_id}", response_model=CaseData)
async def get_case(case_id: int, repository: CaseRepository = Depends(get_case_repository)):
    case = await repository.get_case_by_id(case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="Case not found")
    return case


@router.get("/{case_id}/questions/{question_id}", response_model=QuestionData)
async def get_question(
    case_id: int,
    question_id: int,
    repository: CaseRepository = Depends(get_case_repository)
):
    question = await repository.get_question_by_case_and_question_id(case_id, question_id)
    if question is None:
        raise HTTPException(status_code=404, detail="Question not found")
    return question


@router.post("/{case_id}/questions/{question_id}/check", response_model=AnswerCheckResponse)
async def check_question_answer(
    case_id: int,
    question_id: int,
    request: AnswerCheckRequest,
    repository: CaseRepository = Depends(get_case_repository),
    db: Session = Depends(get_db)
):
    """
    Hit-test a click on the case image

    - Maps the click through the object-fit: contain layout
    - Correct if any answer region contains it (bounds inclusive)
    - With a user_id, a correct answer is recorded as completed
    - Nothing is recorded on a locked case
    """
    case = await repository.get_case_by_id(case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="Case not found")

    question = next((q for q in case.questions if q.id == question_id), None)
    if question is None:
        raise HTTPException(status_code=404, detail="Question not found")

    try:
        correct = check_answer(
            ClickPoint(request.click.x, request.click.y),
            question.answer_regions,
            ImageSize(request.image.width, request.image.height),
            ContainerBox(
                request.container.left,
                request.container.top,
                request.container.width,
                request.container.height,
            ),
        )
    except ImageNotMeasuredError as e:
        raise HTTPException(status_code=409, detail=f"Image not loaded: {str(e)}")

    completed = None
    if correct and request.user_id:
        service = ProgressService(db, request.user_id)
        cases = await repository.get_cases()
        purchased = CoinLedger(db).get_unlocked_cases(request.user_id)
        # Correctness is still reported for a locked case; nothing is recorded
        if service.is_case_playable(case_id, cases, purchased):
            progress = service.record_correct_answer(case_id, question_id, len(case.questions))
            if progress is not None:
                completed = list(progress.completed_questions)

    logger.info(f"Answer check: case={case_id}, question={question_id}, correct={correct}")

    return AnswerCheckResponse(
        correct=correct,
        case_id=case_id,
        question_id=question_id,
        completed_questions=completed,
    )
