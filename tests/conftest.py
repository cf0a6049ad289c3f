"""Pytest configuration and shared fixtures."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from detective.database import Base, get_db
from detective.models import AnswerRegion, Case, Question
from detective.schemas.case import AnswerRegionData, CaseData, QuestionData
from detective.services.auth_events import AuthEventHub
from detective.services.case_repository import CaseRepository
from detective.services.payment_service import PaymentGatewayError
from detective.utils.rate_limiter import rate_limiter


# case id -> (title, [(question storage id, [(x, y, width, height)])])
CASE_FIXTURES = {
    1: ("The Locked Study", [
        (101, [(0.2, 0.3, 0.1, 0.1)]),
        (102, [(0.6, 0.6, 0.2, 0.2), (0.0, 0.0, 0.05, 0.05)]),
    ]),
    2: ("Harbour at Midnight", [
        (201, [(0.1, 0.1, 0.1, 0.1)]),
        (202, [(0.4, 0.4, 0.1, 0.1)]),
        (203, [(0.7, 0.7, 0.1, 0.1)]),
    ]),
    3: ("The Vanished Painter", [
        (301, [(0.5, 0.5, 0.25, 0.25)]),
    ]),
}


def build_case_data():
    """The seeded cases as the repository materializes them"""
    cases = []
    for case_id, (title, questions) in sorted(CASE_FIXTURES.items()):
        cases.append(CaseData(
            id=case_id,
            title=title,
            image=f"https://cdn.example.com/cases/{case_id}.jpg",
            questions=[
                QuestionData(
                    id=number,
                    db_id=db_id,
                    text=f"Question {number}",
                    explanation="",
                    answer_regions=[
                        AnswerRegionData(x=x, y=y, width=w, height=h)
                        for x, y, w, h in regions
                    ],
                )
                for number, (db_id, regions) in enumerate(questions, start=1)
            ],
        ))
    return cases


def seed_cases(session: Session) -> None:
    for case_id, (title, questions) in CASE_FIXTURES.items():
        case = Case(id=case_id, title=title, image_url=f"https://cdn.example.com/cases/{case_id}.jpg")
        for number, (db_id, regions) in enumerate(questions, start=1):
            question = Question(id=db_id, question_number=number, text=f"Question {number}")
            question.answer_regions = [
                AnswerRegion(x=x, y=y, width=w, height=h) for x, y, w, h in regions
            ]
            case.questions.append(question)
        session.add(case)
    # Not served until approved
    session.add(Case(id=4, title="Draft", image_url="https://cdn.example.com/cases/4.jpg", status="draft"))
    session.commit()


class FakeGateway:
    """In-memory stand-in for the payment gateway client"""

    def __init__(self):
        self.payments = {}
        self.calls = []

    async def get_payment(self, payment_id):
        self.calls.append(payment_id)
        if payment_id not in self.payments:
            raise PaymentGatewayError(f"Failed to fetch payment {payment_id}: 404")
        return self.payments[payment_id]


def paid_payment(product_id="COIN_PACK_A", name="코인 패키지 A", total=1000, **overrides):
    payment = {
        "status": "PAID",
        "channel": {"type": "TEST"},
        "customData": f'{{"productId": "{product_id}"}}',
        "orderName": name,
        "amount": {"total": total},
        "currency": "KRW",
    }
    payment.update(overrides)
    return payment


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seeded(db_session):
    seed_cases(db_session)
    return db_session


@pytest.fixture()
def cases():
    return build_case_data()


@pytest.fixture()
def repository(session_factory, seeded):
    return CaseRepository(session_factory)


@pytest.fixture()
def hub(session_factory):
    return AuthEventHub(session_factory, poll_interval_ms=10, poll_timeout_ms=200)


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def client(session_factory, repository, hub, gateway):
    from detective.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.state.case_repository = repository
    app.state.auth_hub = hub
    app.state.payment_gateway_factory = lambda: gateway
    rate_limiter.reset()

    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        del app.state.payment_gateway_factory
        rate_limiter.reset()
