"""
Case content models - cases, their ordered questions and answer regions
"""
from sqlalchemy import (
    Column, Integer, String, Text, Float, TIMESTAMP, ForeignKey, UniqueConstraint, text
)
from sqlalchemy.orm import relationship
from detective.database import Base


class Case(Base):
    """
    Detective cases - one image per case, ordered by id (unlock order)
    """
    __tablename__ = "detective_puzzle_cases"
    
    id = Column(Integer, primary_key=True, autoincrement=False)
    title = Column(String(255), nullable=False)
    image_url = Column(Text, nullable=False)
    status = Column(String(20), default="approved", nullable=False)
    created_at = Column(TIMESTAMP, server_default=text("CURRENT_TIMESTAMP"))
    
    questions = relationship(
        "Question",
        back_populates="case",
        order_by="Question.question_number",
        cascade="all, delete-orphan",
    )
    
    def __repr__(self):
        return f"<Case(id={self.id}, title={self.title})>"


class Question(Base):
    """
    Questions table - `id` is the storage id, `question_number` the ordinal
    used for progress tracking
    """
    __tablename__ = "detective_puzzle_questions"
    __table_args__ = (
        UniqueConstraint("case_id", "question_number", name="uq_question_case_number"),
    )
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, ForeignKey("detective_puzzle_cases.id"), nullable=False, index=True)
    question_number = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    explanation = Column(Text, default="")
    
    case = relationship("Case", back_populates="questions")
    answer_regions = relationship(
        "AnswerRegion",
        back_populates="question",
        order_by="AnswerRegion.id",
        cascade="all, delete-orphan",
    )
    
    def __repr__(self):
        return f"<Question(id={self.id}, case_id={self.case_id}, number={self.question_number})>"


class AnswerRegion(Base):
    """
    Answer regions - normalized rectangles over the case image
    """
    __tablename__ = "detective_puzzle_answer_regions"
    
    id = Column(Integer, primary_key=True, autoincrement=True)
    question_id = Column(Integer, ForeignKey("detective_puzzle_questions.id"), nullable=False, index=True)
    x = Column(Float, nullable=False)
    y = Column(Float, nullable=False)
    width = Column(Float, nullable=False)
    height = Column(Float, nullable=False)
    description = Column(Text, default="")
    
    question = relationship("Question", back_populates="answer_regions")
    
    def __repr__(self):
        return f"<AnswerRegion(question_id={self.question_id}, x={self.x}, y={self.y})>"
