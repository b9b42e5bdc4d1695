"""
Tests de middleware, errores y helpers comunes
"""
from datetime import datetime, timezone

from billing.common.exceptions import (
    AlreadySignedError, ConflictError, ExpiredError, StateError, ValidationError
)
from billing.common.utils import as_utc
from billing.modules.documents.models import InvoiceStatus


class TestPublicEndpoints:

    def test_root_and_health_need_no_tenant(self, client):
        assert client.get("/").status_code == 200
        assert client.get("/health").json()["status"] == "healthy"

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"


class TestTenantMiddleware:

    def test_missing_header(self, client):
        response = client.get("/company/")
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_invalid_header(self, client):
        response = client.get("/company/", headers={"X-Company-ID": "no-es-uuid"})
        assert response.status_code == 400

    def test_tenant_is_echoed(self, client, auth_headers):
        response = client.get("/company/", headers=auth_headers)
        assert response.headers["X-Tenant-ID"] == auth_headers["X-Company-ID"]

    def test_bad_token(self, client, auth_headers):
        headers = dict(auth_headers, Authorization="Bearer not-a-jwt")
        assert client.get("/company/", headers=headers).status_code == 401


class TestErrorPayloads:

    def test_validation_error_for_field(self):
        error = ValidationError.for_field("amount", "Monto inválido")
        assert error.status_code == 400
        assert error.to_dict() == {
            "error": "validation_error",
            "detail": "Monto inválido",
            "errors": [{"field": "amount", "message": "Monto inválido"}],
        }

    def test_state_error_exposes_state_value(self):
        error = StateError("No permitido", current_state=InvoiceStatus.VOID)
        assert error.to_dict()["current_state"] == "void"
        assert error.current_state is InvoiceStatus.VOID

    def test_conflict_is_retryable(self):
        error = ConflictError("Duplicado")
        assert error.status_code == 409
        assert error.to_dict()["retryable"] is True

    def test_signature_errors(self):
        assert ExpiredError().status_code == 410
        signed_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        error = AlreadySignedError(signed_at=signed_at)
        assert error.status_code == 400
        assert error.to_dict()["signed_at"] == signed_at
        assert isinstance(error, StateError)


def test_as_utc():
    naive = datetime(2026, 5, 1, 12, 0)
    assert as_utc(naive).tzinfo == timezone.utc
    assert as_utc(None) is None
