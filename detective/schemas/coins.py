"""
Pydantic schemas for the coin ledger
"""
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from typing import List, Optional


class TransactionType(str, Enum):
    CHARGE = "charge"
    SPEND = "spend"


class CoinPurpose(str, Enum):
    COIN_PURCHASE = "coin_purchase"
    ANSWER_REVEAL = "answer_reveal"
    CASE_UNLOCK = "case_unlock"


class LedgerResult(BaseModel):
    """Outcome of a ledger mutation; business rejections set success=False"""
    success: bool
    error: Optional[str] = None


class RevealResult(LedgerResult):
    already_owned: bool = False
    balance: Optional[int] = None


class BalanceResponse(BaseModel):
    user_id: str
    balance: int


class SpendRequest(BaseModel):
    amount: int = Field(..., gt=0)
    purpose: CoinPurpose
    related_id: Optional[int] = None


class RevealRequest(BaseModel):
    """Reveal the answer of a question, identified by case and ordinal"""
    case_id: int = Field(..., ge=1)
    question_id: int = Field(..., ge=1)


class UnlockRequest(BaseModel):
    case_id: int = Field(..., ge=1)


class PurchasedAnswersResponse(BaseModel):
    case_id: int
    question_ids: List[int]


class UnlockedCasesResponse(BaseModel):
    case_ids: List[int]


class CoinTransactionView(BaseModel):
    """Transaction history entry, decorated for answer reveals"""
    id: int
    type: TransactionType
    amount: int
    purpose: Optional[CoinPurpose] = None
    related_id: Optional[int] = None
    created_at: Optional[datetime] = None
    case_id: Optional[int] = None
    case_title: Optional[str] = None
    question_number: Optional[int] = None


class CoinProductView(BaseModel):
    id: str
    name: str
    base_coins: int
    bonus_coins: int
    total_coins: int
    price: int
    discount_rate: int
