"""
Fixtures compartidas por los tests de todos los módulos.

La base de datos es un archivo SQLite temporal; las variables de entorno se
fijan antes de importar ``billing`` para que settings y engine las tomen.
"""
import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="billing-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'billing.db')}"
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["SIGNATURE_STORAGE_ENABLED"] = "false"
os.environ["APP_SECRET_STRING"] = "test-secret-key"

from decimal import Decimal
from uuid import uuid4

import jwt
import pytest
from fastapi.testclient import TestClient

from billing.core.config import settings
from billing.database.database import Base, SessionLocal, sync_engine
from billing.main import app
from billing.modules.clients.models import Client
from billing.modules.company.models import Company


class RecordingTask:
    """Sustituto de una tarea Celery: registra los .delay() en lugar de encolar"""

    def __init__(self, name: str):
        self.name = name
        self.calls = []

    def delay(self, *args, **kwargs):
        self.calls.append((args, kwargs))


@pytest.fixture(scope="session", autouse=True)
def create_schema():
    Base.metadata.create_all(bind=sync_engine)
    yield
    Base.metadata.drop_all(bind=sync_engine)
    sync_engine.dispose()


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with sync_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(autouse=True)
def email_tasks(monkeypatch):
    """Evita contactar al broker; devuelve las tareas para inspeccionar los envíos"""
    import billing.modules.documents.service as document_service
    import billing.modules.signatures.service as signature_service

    tasks = {
        "request": RecordingTask("send_signature_request_email_task"),
        "confirmation": RecordingTask("send_signature_confirmation_email_task"),
        "invoice": RecordingTask("send_invoice_email_task"),
        "quote": RecordingTask("send_quote_email_task"),
    }
    monkeypatch.setattr(signature_service, "send_signature_request_email_task", tasks["request"])
    monkeypatch.setattr(signature_service, "send_signature_confirmation_email_task", tasks["confirmation"])
    monkeypatch.setattr(document_service, "send_invoice_email_task", tasks["invoice"])
    monkeypatch.setattr(document_service, "send_quote_email_task", tasks["quote"])
    return tasks


@pytest.fixture
def db_session():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def session_factory():
    return SessionLocal


@pytest.fixture
def sample_company(db_session):
    company = Company(
        owner_id="user-" + uuid4().hex[:8],
        name="Comercial Andina S.A.C.",
        tax_id="20123456789",
        email="facturacion@andina.pe",
        address="Av. Arequipa 123, Lima",
        tax_rate=Decimal("18.00"),
        currency="PEN",
        invoice_series="F001",
        quote_series="P001",
    )
    db_session.add(company)
    db_session.commit()
    db_session.refresh(company)
    return company


@pytest.fixture
def other_company(db_session):
    company = Company(owner_id="user-other", name="Otra Empresa S.A.C.")
    db_session.add(company)
    db_session.commit()
    db_session.refresh(company)
    return company


@pytest.fixture
def sample_client(db_session, sample_company):
    client = Client(
        tenant_id=sample_company.id,
        name="Distribuidora Lima E.I.R.L.",
        document_type="RUC",
        document_number="20987654321",
        email="compras@distlima.pe",
    )
    db_session.add(client)
    db_session.commit()
    db_session.refresh(client)
    return client


def make_token(subject: str, **claims) -> str:
    payload = {"sub": subject, "email": f"{subject}@example.com"}
    payload.update(claims)
    return jwt.encode(payload, settings.APP_SECRET_STRING, algorithm=settings.ALGORITHM)


@pytest.fixture
def headers_for():
    """Headers de autenticación del dueño de una empresa"""
    def build(company):
        return {
            "Authorization": f"Bearer {make_token(company.owner_id)}",
            "X-Company-ID": str(company.id),
        }
    return build


@pytest.fixture
def auth_headers(sample_company, headers_for):
    return headers_for(sample_company)


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
