"""
FastAPI dependencies for the process-wide collaborators

The case repository and the auth event hub are created once at startup and
stored on app.state.
"""
from fastapi import Request

from detective.services.auth_events import AuthEventHub
from detective.services.case_repository import CaseRepository
from detective.services.payment_service import get_payment_gateway


def get_case_repository(request: Request) -> CaseRepository:
    return request.app.state.case_repository


def get_auth_hub(request: Request) -> AuthEventHub:
    return request.app.state.auth_hub


def get_gateway_factory(request: Request):
    """Callable building the payment gateway (raises on missing configuration)"""
    factory = getattr(request.app.state, "payment_gateway_factory", None)
    return factory or get_payment_gateway
