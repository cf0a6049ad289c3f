"""
Coin ledger - balances, purchases and idempotency checks

Transactions are append-only and are the only record of what a user has
bought. Balance changes are single conditional UPDATE statements so two
concurrent spends cannot both pass the balance check.
"""
import logging
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from detective.models import Case, CoinTransaction, PaymentClaim, Question, UnlockedCase, UserCoins
from detective.schemas.coins import (
    CoinPurpose,
    CoinTransactionView,
    LedgerResult,
    RevealResult,
    TransactionType,
)
from detective.services.case_repository import QuestionIdMap

logger = logging.getLogger(__name__)

# Policy prices
ANSWER_REVEAL_PRICE = 3
CASE_UNLOCK_PRICE = 5

MAX_SAFE_INTEGER = 2 ** 53 - 1

ERROR_INSUFFICIENT_COINS = "Not enough coins."
ERROR_ANSWER_ALREADY_PURCHASED = "This answer has already been purchased."
ERROR_CASE_ALREADY_UNLOCKED = "This case has already been unlocked."
ERROR_INVALID_AMOUNT = "Amount must be a positive number of coins."
ERROR_PAYMENT_ALREADY_PROCESSED = "This payment has already been processed."


def payment_reference_hash(reference: str) -> int:
    """
    Map an external payment id onto an integer related_id

    32-bit rolling hash (hash * 31 + code unit, wrapped to signed 32 bits)
    over UTF-16 code units, then abs(hash) mod MAX_SAFE_INTEGER. Not
    cryptographic; only used for idempotency lookups.
    """
    value = 0
    data = reference.encode("utf-16-le")
    for i in range(0, len(data), 2):
        code_unit = data[i] | (data[i + 1] << 8)
        value = (value * 31 + code_unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value) % MAX_SAFE_INTEGER


class CoinLedger:
    """Coin balance and transaction operations"""

    def __init__(self, db: Session):
        self.db = db

    # Balance

    def get_user_coins(self, user_id: str) -> int:
        """Current balance; 0 on missing row or read error"""
        try:
            balance = self.db.query(UserCoins.balance).filter(
                UserCoins.user_id == user_id
            ).scalar()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to read coin balance (user={user_id}): {str(e)}")
            return 0
        return balance or 0

    def initialize_user_coins(self, user_id: str) -> bool:
        """Create the balance row (balance 0) if it does not exist yet"""
        try:
            exists = self.db.query(UserCoins.user_id).filter(
                UserCoins.user_id == user_id
            ).first()
            if exists:
                return True

            self.db.add(UserCoins(user_id=user_id, balance=0))
            self.db.commit()
            logger.info(f"Coin balance initialized for user {user_id}")
            return True
        except IntegrityError:
            # Created concurrently
            self.db.rollback()
            return True
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to initialize coin balance (user={user_id}): {str(e)}")
            return False

    def check_coin_balance(self, user_id: str, required_amount: int) -> bool:
        return self.get_user_coins(user_id) >= required_amount

    # Transaction log

    def _log_transaction(
        self,
        user_id: str,
        type_: TransactionType,
        amount: int,
        purpose: CoinPurpose,
        related_id: Optional[int]
    ) -> None:
        """Append to the transaction log; failures are logged, not raised"""
        try:
            self.db.add(CoinTransaction(
                user_id=user_id,
                type=type_.value,
                amount=amount,
                purpose=purpose.value,
                related_id=related_id,
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Failed to record coin transaction (user={user_id}, type={type_.value}, "
                f"purpose={purpose.value}, related_id={related_id}): {str(e)}"
            )

    def _has_transaction(
        self,
        user_id: str,
        purpose: CoinPurpose,
        related_id: int,
        type_: Optional[TransactionType] = None
    ) -> bool:
        query = self.db.query(CoinTransaction.id).filter(
            CoinTransaction.user_id == user_id,
            CoinTransaction.purpose == purpose.value,
            CoinTransaction.related_id == related_id
        )
        if type_ is not None:
            query = query.filter(CoinTransaction.type == type_.value)
        return query.first() is not None

    # Mutations

    def charge_coins(self, user_id: str, amount: int, payment_id: Optional[str]) -> LedgerResult:
        """
        Credit coins bought through the payment gateway

        The balance update and the transaction insert are separate writes; if
        only the log insert fails the charge still reports success.
        """
        if amount <= 0:
            return LedgerResult(success=False, error=ERROR_INVALID_AMOUNT)

        self.initialize_user_coins(user_id)

        try:
            result = self.db.execute(
                update(UserCoins)
                .where(UserCoins.user_id == user_id)
                .values(balance=UserCoins.balance + amount)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to update coin balance (user={user_id}): {str(e)}")
            return LedgerResult(success=False, error=str(e))

        if result.rowcount == 0:
            logger.error(f"Coin balance row missing after initialization (user={user_id})")
            return LedgerResult(success=False, error="Coin balance is not available.")

        related_id = payment_reference_hash(payment_id) if payment_id else None
        self._log_transaction(
            user_id, TransactionType.CHARGE, amount, CoinPurpose.COIN_PURCHASE, related_id
        )
        logger.info(f"Charged {amount} coins to user {user_id} (payment={payment_id})")
        return LedgerResult(success=True)

    def spend_coins(
        self,
        user_id: str,
        amount: int,
        purpose: CoinPurpose,
        related_id: Optional[int] = None
    ) -> LedgerResult:
        """
        Spend coins on an answer reveal or a case unlock

        Answer reveals are rejected when the same question was already bought.
        The balance check and the decrement are one conditional UPDATE.
        """
        purpose = CoinPurpose(purpose)
        if amount <= 0:
            return LedgerResult(success=False, error=ERROR_INVALID_AMOUNT)

        self.initialize_user_coins(user_id)

        if purpose == CoinPurpose.ANSWER_REVEAL and related_id:
            try:
                if self._has_transaction(user_id, CoinPurpose.ANSWER_REVEAL, related_id):
                    logger.info(f"Answer {related_id} already purchased by user {user_id}")
                    return LedgerResult(success=False, error=ERROR_ANSWER_ALREADY_PURCHASED)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to check purchase history (user={user_id}): {str(e)}")

        try:
            result = self.db.execute(
                update(UserCoins)
                .where(UserCoins.user_id == user_id, UserCoins.balance >= amount)
                .values(balance=UserCoins.balance - amount)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to update coin balance (user={user_id}): {str(e)}")
            return LedgerResult(success=False, error=str(e))

        if result.rowcount == 0:
            logger.info(f"Insufficient coins: user={user_id}, amount={amount}, purpose={purpose.value}")
            return LedgerResult(success=False, error=ERROR_INSUFFICIENT_COINS)

        self._log_transaction(user_id, TransactionType.SPEND, amount, purpose, related_id)
        logger.info(
            f"User {user_id} spent {amount} coins (purpose={purpose.value}, related_id={related_id})"
        )
        return LedgerResult(success=True)

    # Idempotency checks

    def is_payment_already_processed(self, user_id: str, payment_id: str) -> bool:
        """
        Whether a charge for this payment id was already recorded

        Read errors return False so the request can be retried.
        """
        try:
            return self._has_transaction(
                user_id,
                CoinPurpose.COIN_PURCHASE,
                payment_reference_hash(payment_id),
                type_=TransactionType.CHARGE
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to check payment history (user={user_id}): {str(e)}")
            return False

    def claim_payment(self, user_id: str, payment_id: str) -> LedgerResult:
        """
        Reserve a payment id before it is verified and credited

        The insert is the replay guard: a second claim for the same id, even
        a concurrent one, fails on the unique constraint.
        """
        try:
            self.db.add(PaymentClaim(payment_id=payment_id, user_id=user_id))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Payment {payment_id} already claimed (user={user_id})")
            return LedgerResult(success=False, error=ERROR_PAYMENT_ALREADY_PROCESSED)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to claim payment {payment_id} (user={user_id}): {str(e)}")
            return LedgerResult(success=False, error=str(e))
        return LedgerResult(success=True)

    def release_payment_claim(self, payment_id: str) -> None:
        """Give a claim back after a rejected verification so the payment can be retried"""
        try:
            self.db.query(PaymentClaim).filter(
                PaymentClaim.payment_id == payment_id
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to release payment claim {payment_id}: {str(e)}")

    def check_answer_purchased(
        self,
        user_id: str,
        question_db_id: int,
        question_number: Optional[int] = None
    ) -> bool:
        """Purchased by storage id, falling back to legacy ordinal-keyed rows"""
        candidates = [question_db_id]
        if question_number is not None:
            candidates.append(question_number)

        for related_id in candidates:
            try:
                if self._has_transaction(user_id, CoinPurpose.ANSWER_REVEAL, related_id):
                    return True
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to check answer purchase (user={user_id}): {str(e)}")
        return False

    # Reads

    def get_unlocked_cases(self, user_id: str) -> List[int]:
        try:
            rows = self.db.query(UnlockedCase.case_id).filter(
                UnlockedCase.user_id == user_id
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load unlocked cases (user={user_id}): {str(e)}")
            return []
        return sorted(int(row.case_id) for row in rows)

    def get_purchased_answers(self, user_id: str, id_map: QuestionIdMap) -> List[int]:
        """
        Ordinals of the case's questions whose storage id appears as the
        related_id of an answer_reveal transaction
        """
        if not id_map.db_to_number:
            return []

        try:
            rows = self.db.query(CoinTransaction.related_id).filter(
                CoinTransaction.user_id == user_id,
                CoinTransaction.purpose == CoinPurpose.ANSWER_REVEAL.value
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load purchased answers (user={user_id}): {str(e)}")
            return []

        purchased = set()
        for row in rows:
            if not row.related_id:
                continue
            number = id_map.number(int(row.related_id))
            if number is not None:
                purchased.add(number)
        return sorted(purchased)

    def get_coin_transactions(self, user_id: str) -> List[CoinTransactionView]:
        """Transaction history, newest first"""
        try:
            rows = self.db.query(CoinTransaction).filter(
                CoinTransaction.user_id == user_id
            ).order_by(CoinTransaction.created_at.desc(), CoinTransaction.id.desc()).all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load coin transactions (user={user_id}): {str(e)}")
            return []

        question_ids = {
            int(row.related_id) for row in rows
            if row.purpose == CoinPurpose.ANSWER_REVEAL.value and row.related_id
        }
        question_info = {}
        if question_ids:
            try:
                matches = (
                    self.db.query(Question.id, Question.question_number, Case.id, Case.title)
                    .join(Case, Question.case_id == Case.id)
                    .filter(Question.id.in_(question_ids))
                    .all()
                )
                for question_id, number, case_id, title in matches:
                    question_info[question_id] = (case_id, title, number)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to decorate answer reveals: {str(e)}")

        history = []
        for row in rows:
            view = CoinTransactionView(
                id=row.id,
                type=row.type,
                amount=row.amount,
                purpose=row.purpose,
                related_id=row.related_id,
                created_at=row.created_at,
            )
            info = question_info.get(row.related_id) if row.purpose == CoinPurpose.ANSWER_REVEAL.value else None
            if info:
                view.case_id, view.case_title, view.question_number = info
            history.append(view)
        return history

    # Purchases

    def reveal_answer(
        self,
        user_id: str,
        question_db_id: int,
        question_number: Optional[int] = None
    ) -> RevealResult:
        """
        Idempotent answer reveal: an already-owned answer is returned
        without charging again
        """
        if self.check_answer_purchased(user_id, question_db_id, question_number):
            return RevealResult(
                success=True, already_owned=True, balance=self.get_user_coins(user_id)
            )

        result = self.spend_coins(
            user_id, ANSWER_REVEAL_PRICE, CoinPurpose.ANSWER_REVEAL, question_db_id
        )
        if not result.success and result.error == ERROR_ANSWER_ALREADY_PURCHASED:
            return RevealResult(
                success=True, already_owned=True, balance=self.get_user_coins(user_id)
            )
        return RevealResult(
            success=result.success, error=result.error, balance=self.get_user_coins(user_id)
        )

    def unlock_case(self, user_id: str, case_id: int) -> LedgerResult:
        """Buy a case outright, independent of sequential unlock"""
        if case_id in self.get_unlocked_cases(user_id):
            return LedgerResult(success=False, error=ERROR_CASE_ALREADY_UNLOCKED)

        spend = self.spend_coins(user_id, CASE_UNLOCK_PRICE, CoinPurpose.CASE_UNLOCK, case_id)
        if not spend.success:
            return spend

        try:
            self.db.add(UnlockedCase(user_id=user_id, case_id=case_id))
            self.db.commit()
        except IntegrityError:
            # Unlocked concurrently
            self.db.rollback()
            return LedgerResult(success=True)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record case unlock (user={user_id}, case={case_id}): {str(e)}")
            return LedgerResult(success=False, error=str(e))

        logger.info(f"Case {case_id} unlocked by user {user_id}")
        return LedgerResult(success=True)
