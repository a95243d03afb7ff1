"""
Fixtures compartidas: base SQLite en memoria por test, fábricas de datos
y un scraper falso del portal estatal.
"""
import os
import sys

from cryptography.fernet import Fernet

# La configuración se lee al importar app.core.config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["RATE_LIMIT_REQUESTS"] = "100000"
os.environ["STATE_MONITOR_RETRY_DELAY_SECONDS"] = "0"
os.environ["ENFORCE_STATUS_TRANSITIONS"] = "false"

backend_path = os.path.join(os.path.dirname(__file__), "..")
if backend_path not in sys.path:
    sys.path.insert(0, backend_path)

from decimal import Decimal
from typing import List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.security import encrypt_sensitive_data
from app.db.database import Base
from app.models import models  # noqa: F401
from app.models.models import (
    CheckResult, ClientProfile, Document, DocumentType, PaymentMethod,
    TaxCase, User, UserRole,
)
from app.services.refund_scraper import ScrapeRequest, ScrapeResponse
from app.services.state_refund_monitor import StateRefundMonitor


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def reset_sweep_guard():
    StateRefundMonitor._is_running_check_all = False
    yield
    StateRefundMonitor._is_running_check_all = False


class Factory:
    """Crea usuarios, perfiles, casos y documentos con valores razonables."""

    def __init__(self, db):
        self.db = db
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def user(self, role=UserRole.CLIENT, first_name="Ana", last_name="Pérez", **fields) -> User:
        n = self._next()
        fields.setdefault("is_active", True)
        user = User(
            email=f"user{n}@example.com",
            first_name=first_name,
            last_name=last_name,
            role=role,
            **fields,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def admin(self, **fields) -> User:
        return self.user(role=UserRole.ADMIN, first_name="Admin", last_name="Root", **fields)

    def profile(self, user: User, ssn="123-45-6789", profile_complete=True, is_draft=False) -> ClientProfile:
        profile = ClientProfile(
            user_id=user.id,
            ssn=encrypt_sensitive_data(ssn) if ssn else None,
            profile_complete=profile_complete,
            is_draft=is_draft,
        )
        self.db.add(profile)
        self.db.commit()
        return profile

    def case(self, user: User = None, tax_year=2025, profile_kwargs=None, **fields) -> TaxCase:
        if user is None:
            user = self.user()
        profile = user.client_profile or self.profile(user, **(profile_kwargs or {}))
        fields.setdefault("payment_method", PaymentMethod.BANK_DEPOSIT)
        case = TaxCase(client_profile_id=profile.id, tax_year=tax_year, **fields)
        self.db.add(case)
        self.db.commit()
        self.db.refresh(case)
        return case

    def document(self, case: TaxCase, doc_type: DocumentType, file_name="archivo.pdf") -> Document:
        document = Document(tax_case_id=case.id, type=doc_type, file_name=file_name)
        self.db.add(document)
        self.db.commit()
        self.db.refresh(case)
        return document

    def colorado_case(self, **fields) -> TaxCase:
        fields.setdefault("work_state", "Colorado")
        fields.setdefault("case_status", models.CaseStatus.taxes_filed)
        fields.setdefault("state_actual_refund", Decimal("850.00"))
        return self.case(**fields)


@pytest.fixture
def factory(db):
    return Factory(db)


class FakeScraper:
    """
    Devuelve las respuestas en orden; la última se repite.
    Si recibe una excepción, la lanza.
    """

    def __init__(self, *responses):
        self.responses: List = list(responses) or [
            ScrapeResponse(result=CheckResult.SUCCESS, raw_status="Return Received")
        ]
        self.calls: List[ScrapeRequest] = []

    async def check_refund_status(self, request: ScrapeRequest) -> ScrapeResponse:
        self.calls.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def ok(raw_status: str, **fields) -> ScrapeResponse:
    return ScrapeResponse(result=CheckResult.SUCCESS, raw_status=raw_status, **fields)


def failed(result=CheckResult.ERROR, raw_status="Portal unavailable") -> ScrapeResponse:
    return ScrapeResponse(result=result, raw_status=raw_status, error_message="portal caído")
