"""
Coin ledger models - balances, append-only transactions, purchased cases
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, TIMESTAMP, CheckConstraint, UniqueConstraint, text
)
from detective.database import Base


class UserCoins(Base):
    """
    Coin balance per user, created lazily with balance 0
    """
    __tablename__ = "user_coins"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_coins_balance_non_negative"),
    )
    
    user_id = Column(String(64), primary_key=True)
    balance = Column(Integer, nullable=False, default=0)
    updated_at = Column(TIMESTAMP, server_default=text("CURRENT_TIMESTAMP"))
    
    def __repr__(self):
        return f"<UserCoins(user_id={self.user_id}, balance={self.balance})>"


class CoinTransaction(Base):
    """
    Coin transactions - sole source of truth for "already purchased" checks
    
    related_id depends on purpose:
    - coin_purchase: hash of the external payment id
    - answer_reveal: question storage id (ordinal tolerated for legacy rows)
    - case_unlock: case id
    """
    __tablename__ = "coin_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_coin_transactions_amount_positive"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    type = Column(String(10), nullable=False)  # charge | spend
    amount = Column(Integer, nullable=False)
    purpose = Column(String(20), nullable=True)  # coin_purchase | answer_reveal | case_unlock
    related_id = Column(BigInteger, nullable=True, index=True)
    created_at = Column(TIMESTAMP, server_default=text("CURRENT_TIMESTAMP"))
    
    def __repr__(self):
        return (
            f"<CoinTransaction(user_id={self.user_id}, type={self.type}, "
            f"amount={self.amount}, purpose={self.purpose}, related_id={self.related_id})>"
        )


class UnlockedCase(Base):
    """
    Cases bought outright with coins, independent of sequential unlock
    """
    __tablename__ = "unlocked_cases"
    __table_args__ = (
        UniqueConstraint("user_id", "case_id", name="uq_unlocked_cases_user_case"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    case_id = Column(Integer, nullable=False)
    created_at = Column(TIMESTAMP, server_default=text("CURRENT_TIMESTAMP"))
    
    def __repr__(self):
        return f"<UnlockedCase(user_id={self.user_id}, case_id={self.case_id})>"


class PaymentClaim(Base):
    """
    One row per external payment id, inserted before the gateway lookup
    
    The unique payment_id makes concurrent completions of the same payment
    collide; the loser is rejected as a replay.
    """
    __tablename__ = "payment_claims"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(String(128), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False, index=True)
    created_at = Column(TIMESTAMP, server_default=text("CURRENT_TIMESTAMP"))
    
    def __repr__(self):
        return f"<PaymentClaim(payment_id={self.payment_id}, user_id={self.user_id})>"
