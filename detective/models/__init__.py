"""
Database models package
"""
from detective.models.case import Case, Question, AnswerRegion
from detective.models.user_progress import UserProgress
from detective.models.coins import UserCoins, CoinTransaction, UnlockedCase, PaymentClaim

__all__ = [
    "Case", "Question", "AnswerRegion", "UserProgress",
    "UserCoins", "CoinTransaction", "UnlockedCase", "PaymentClaim",
]
