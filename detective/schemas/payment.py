"""
Pydantic schemas for payment completion
"""
from pydantic import BaseModel
from typing import Optional


class PaymentCompleteResponse(BaseModel):
    success: bool
    coins: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
