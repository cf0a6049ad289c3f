"""
Coin ledger API endpoints
"""
from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List
import logging

from detective.database import get_db
from detective.dependencies import get_case_repository
from detective.schemas.coins import (
    BalanceResponse,
    CoinProductView,
    CoinPurpose,
    CoinTransactionView,
    LedgerResult,
    PurchasedAnswersResponse,
    RevealRequest,
    RevealResult,
    SpendRequest,
    UnlockedCasesResponse,
    UnlockRequest,
)
from detective.services.case_repository import CaseRepository
from detective.services.coin_products import COIN_PRODUCTS
from detective.services.coin_service import CoinLedger

router = APIRouter(tags=["coins"])
logger = logging.getLogger(__name__)


@router.get("/api/coins/products", response_model=List[CoinProductView])
async def list_coin_products():
    """Coin packs available for purchase"""
    return [CoinProductView(**asdict(product)) for product in COIN_PRODUCTS]


@router.get("/api/users/{user_id}/coins", response_model=BalanceResponse)
async def get_balance(user_id: str, db: Session = Depends(get_db)):
    return BalanceResponse(user_id=user_id, balance=CoinLedger(db).get_user_coins(user_id))


@router.post("/api/users/{user_id}/coins/init", response_model=BalanceResponse)
async def initialize_balance(user_id: str, db: Session = Depends(get_db)):
    """Create the user's balance row (idempotent)"""
    ledger = CoinLedger(db)
    if not ledger.initialize_user_coins(user_id):
        raise HTTPException(status_code=500, detail="Failed to initialize coin balance")
    return BalanceResponse(user_id=user_id, balance=ledger.get_user_coins(user_id))


@router.post("/api/users/{user_id}/coins/spend", response_model=LedgerResult)
async def spend_coins(user_id: str, request: SpendRequest, db: Session = Depends(get_db)):
    """
    Spend coins directly

    Coin purchases are only credited through payment completion.
    """
    if request.purpose == CoinPurpose.COIN_PURCHASE:
        raise HTTPException(status_code=400, detail="coin_purchase cannot be spent")
    return CoinLedger(db).spend_coins(user_id, request.amount, request.purpose, request.related_id)


@router.post("/api/users/{user_id}/coins/reveal", response_model=RevealResult)
async def reveal_answer(
    user_id: str,
    request: RevealRequest,
    repository: CaseRepository = Depends(get_case_repository),
    db: Session = Depends(get_db)
):
    """
    Buy the answer of a question

    - Charged against the question's storage id
    - Revealing an owned answer again costs nothing
    """
    db_id = await repository.get_question_db_id(request.case_id, request.question_id)
    if db_id is None:
        raise HTTPException(status_code=404, detail="Question not found")

    result = CoinLedger(db).reveal_answer(user_id, db_id, request.question_id)
    logger.info(
        f"Answer reveal: user={user_id}, case={request.case_id}, question={request.question_id}, "
        f"success={result.success}, already_owned={result.already_owned}"
    )
    return result


@router.post("/api/users/{user_id}/coins/unlock", response_model=LedgerResult)
async def unlock_case(
    user_id: str,
    request: UnlockRequest,
    repository: CaseRepository = Depends(get_case_repository),
    db: Session = Depends(get_db)
):
    case = await repository.get_case_by_id(request.case_id)
    if case is None:
        raise HTTPException(status_code=404, detail="Case not found")
    return CoinLedger(db).unlock_case(user_id, request.case_id)


@router.get(
    "/api/users/{user_id}/coins/purchased-answers/{case_id}",
    response_model=PurchasedAnswersResponse
)
async def get_purchased_answers(
    user_id: str,
    case_id: int,
    repository: CaseRepository = Depends(get_case_repository),
    db: Session = Depends(get_db)
):
    """Question ordinals of the case whose answers the user owns"""
    id_map = await repository.get_question_id_map(case_id)
    if id_map is None:
        raise HTTPException(status_code=404, detail="Case not found")
    return PurchasedAnswersResponse(
        case_id=case_id,
        question_ids=CoinLedger(db).get_purchased_answers(user_id, id_map),
    )


@router.get("/api/users/{user_id}/coins/unlocked-cases", response_model=UnlockedCasesResponse)
async def get_unlocked_cases(user_id: str, db: Session = Depends(get_db)):
    return UnlockedCasesResponse(case_ids=CoinLedger(db).get_unlocked_cases(user_id))


@router.get("/api/users/{user_id}/coins/transactions", response_model=List[CoinTransactionView])
async def get_transactions(user_id: str, db: Session = Depends(get_db)):
    return CoinLedger(db).get_coin_transactions(user_id)
