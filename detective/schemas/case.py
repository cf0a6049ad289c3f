"""
Pydantic schemas for case content and hit checking
"""
from pydantic import BaseModel, Field
from typing import List, Optional


class AnswerRegionData(BaseModel):
    """Normalized answer rectangle (fractions of the image size)"""
    x: float = Field(..., ge=0.0, le=1.0)
    y: float = Field(..., ge=0.0, le=1.0)
    width: float = Field(..., ge=0.0, le=1.0)
    height: float = Field(..., ge=0.0, le=1.0)
    description: str = ""


class QuestionData(BaseModel):
    """Question within a case - `id` is the ordinal, `db_id` the storage id"""
    id: int = Field(..., ge=1)
    db_id: int
    text: str
    explanation: str = ""
    answer_regions: List[AnswerRegionData] = []


class CaseData(BaseModel):
    """Fully materialized case with questions and answer regions"""
    id: int
    title: str
    image: str
    questions: List[QuestionData] = []


class CaseSummary(BaseModel):
    """List-only view used for fast initial paint"""
    id: int
    title: str
    image_url: str


class CasesResponse(BaseModel):
    cases: List[CaseData]


class TotalQuestionsResponse(BaseModel):
    total_questions: int


class ClickPosition(BaseModel):
    x: float
    y: float


class ImageDimensions(BaseModel):
    width: float = Field(..., ge=0.0)
    height: float = Field(..., ge=0.0)


class ContainerRect(BaseModel):
    left: float
    top: float
    width: float = Field(..., ge=0.0)
    height: float = Field(..., ge=0.0)


class AnswerCheckRequest(BaseModel):
    """Click on the case image, with the layout needed to map it"""
    click: ClickPosition
    image: ImageDimensions
    container: ContainerRect
    user_id: Optional[str] = Field(None, description="Record progress for this user on a hit")


class AnswerCheckResponse(BaseModel):
    correct: bool
    case_id: int
    question_id: int
    completed_questions: Optional[List[int]] = None
