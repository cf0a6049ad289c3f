"""
UserProgress model - one row per (user, case)
"""
from sqlalchemy import Column, Integer, String, TIMESTAMP, JSON, UniqueConstraint, text
from detective.database import Base


class UserProgress(Base):
    """
    User progress table - current question and completed question ordinals
    """
    __tablename__ = "user_progress"
    __table_args__ = (
        UniqueConstraint("user_id", "case_id", name="uq_user_progress_user_case"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    case_id = Column(Integer, nullable=False)
    current_question_id = Column(Integer, nullable=False, default=1)
    completed_questions = Column(JSON, nullable=False, default=list)  # [1, 2, 3]
    last_updated_at = Column(TIMESTAMP(timezone=True), nullable=False)
    created_at = Column(TIMESTAMP, server_default=text("CURRENT_TIMESTAMP"))
    
    def __repr__(self):
        return (
            f"<UserProgress(user_id={self.user_id}, case_id={self.case_id}, "
            f"current={self.current_question_id}, completed={self.completed_questions})>"
        )
