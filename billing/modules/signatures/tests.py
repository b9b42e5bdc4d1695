"""
Tests del flujo de firma electrónica

Cubren solicitud, validación del token, envío de la firma, expiración,
cancelación y el almacenamiento de artefactos.
"""
import base64
from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from kombu.exceptions import OperationalError
from urllib3.exceptions import MaxRetryError

from billing.common.exceptions import ValidationError
from billing.common.utils import utcnow
from billing.modules.signatures.models import Signature, SignatureRequest, SignatureRequestStatus
from billing.modules.signatures.schemas import SignatureSubmit
from billing.modules.signatures.service import SignatureService, detect_device_type
from billing.modules.signatures.storage import SignatureArtifactStore, decode_data_url
from billing.modules.signatures.tasks import expire_signature_requests

PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(b"\x89PNG\r\n\x1a\nsignature").decode()
PDF_DATA_URL = "data:application/pdf;filename=generated.pdf;base64," + base64.b64encode(b"%PDF-1.4 signed").decode()


@pytest.fixture
def invoice(client, auth_headers, sample_client):
    response = client.post("/documents/invoice", json={
        "client_id": str(sample_client.id),
        "items": [{"description": "Mantenimiento", "quantity": "2", "unit_price": "100.00"}],
    }, headers=auth_headers)
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def signature_request(client, auth_headers, invoice):
    response = client.post("/signatures/request", json={
        "document_type": "invoice",
        "document_id": invoice["id"],
        "signer_email": "cliente@distlima.pe",
        "signer_name": "Rosa Quispe",
    }, headers=auth_headers)
    assert response.status_code == 201, response.text
    return response.json()


def submit(client, token, **overrides):
    payload = {"token": token, "signature_image": PNG_DATA_URL, "consent_given": True}
    payload.update(overrides)
    return client.post("/signatures/submit", json=payload, headers={"User-Agent": "Mozilla/5.0 (iPhone) Mobile"})


def set_expires_at(db_session, token, when):
    request = db_session.query(SignatureRequest).filter(SignatureRequest.token == token).one()
    request.expires_at = when
    db_session.commit()


# ===== SOLICITUD =====

class TestRequestSignature:

    def test_request_creates_token_and_queues_email(self, signature_request, email_tasks, invoice):
        token = signature_request["token"]
        assert len(token) == 64
        int(token, 16)
        assert signature_request["signing_url"] == f"/sign/{token}"
        assert signature_request["status"] == "pending"
        assert signature_request["email_queued"] is True

        (args, _), = email_tasks["request"].calls
        context = args[0]
        assert context["token"] == token
        assert context["document_number"] == invoice["document_number"]
        assert context["signer_email"] == "cliente@distlima.pe"

    def test_expires_in_seven_days(self, signature_request, db_session):
        request = db_session.query(SignatureRequest).one()
        delta = request.expires_at.replace(tzinfo=None) - utcnow().replace(tzinfo=None)
        assert timedelta(days=6, hours=23) < delta <= timedelta(days=7)

    def test_without_email(self, client, auth_headers, invoice, email_tasks, db_session):
        response = client.post("/signatures/request", json={
            "document_type": "invoice",
            "document_id": invoice["id"],
            "signer_email": "otro@example.com",
            "send_email": False,
        }, headers=auth_headers)
        assert response.status_code == 201
        assert response.json()["email_queued"] is False
        assert email_tasks["request"].calls == []
        assert db_session.query(SignatureRequest).one().sent_at is None

    def test_tokens_are_unique(self, client, auth_headers, invoice):
        tokens = set()
        for _ in range(5):
            response = client.post("/signatures/request", json={
                "document_type": "invoice", "document_id": invoice["id"], "signer_email": "a@example.com",
            }, headers=auth_headers)
            tokens.add(response.json()["token"])
        assert len(tokens) == 5

    def test_unknown_document(self, client, auth_headers):
        response = client.post("/signatures/request", json={
            "document_type": "quote", "document_id": str(uuid4()), "signer_email": "a@example.com",
        }, headers=auth_headers)
        assert response.status_code == 404

    def test_document_type_must_match(self, client, auth_headers, invoice):
        response = client.post("/signatures/request", json={
            "document_type": "quote", "document_id": invoice["id"], "signer_email": "a@example.com",
        }, headers=auth_headers)
        assert response.status_code == 404

    def test_invalid_email(self, client, auth_headers, invoice):
        response = client.post("/signatures/request", json={
            "document_type": "invoice", "document_id": invoice["id"], "signer_email": "no-es-correo",
        }, headers=auth_headers)
        assert response.status_code == 400

    def test_broker_failure_does_not_undo_request(self, client, auth_headers, invoice, email_tasks, db_session):
        def broken_delay(*args, **kwargs):
            raise OperationalError("Error 111 connecting to redis:6379")

        email_tasks["request"].delay = broken_delay
        response = client.post("/signatures/request", json={
            "document_type": "invoice", "document_id": invoice["id"], "signer_email": "a@example.com",
        }, headers=auth_headers)

        assert response.status_code == 201
        assert response.json()["email_queued"] is False
        assert db_session.query(SignatureRequest).count() == 1


# ===== VALIDACIÓN (público) =====

class TestValidateToken:

    def test_returns_document_snapshot(self, client, signature_request, invoice, sample_company):
        response = client.get(f"/signatures/validate/{signature_request['token']}")
        assert response.status_code == 200
        data = response.json()

        assert data["request"]["status"] == "pending"
        assert data["request"]["document_type"] == "invoice"
        assert data["company"]["name"] == sample_company.name
        assert data["document"]["document_number"] == invoice["document_number"]
        assert data["document"]["client"]["name"] == "Distribuidora Lima E.I.R.L."
        assert len(data["document"]["line_items"]) == 1
        assert data["document"]["total"] == invoice["total"]
        assert data["consent_text"]

    def test_viewed_at_is_set_once(self, client, signature_request):
        url = f"/signatures/validate/{signature_request['token']}"
        first = client.get(url).json()["request"]["viewed_at"]
        second = client.get(url).json()["request"]["viewed_at"]
        assert first is not None
        assert first == second

    def test_unknown_token(self, client):
        response = client.get(f"/signatures/validate/{'0' * 64}")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_expired_token_is_persisted(self, client, signature_request, db_session):
        token = signature_request["token"]
        set_expires_at(db_session, token, utcnow() - timedelta(minutes=1))

        response = client.get(f"/signatures/validate/{token}")
        assert response.status_code == 410
        assert response.json()["error"] == "expired"
        assert response.json()["current_state"] == "EXPIRED"

        db_session.expire_all()
        assert db_session.query(SignatureRequest).one().status == SignatureRequestStatus.EXPIRED

        # Sigue vencida aunque se extienda la fecha
        set_expires_at(db_session, token, utcnow() + timedelta(days=1))
        assert client.get(f"/signatures/validate/{token}").status_code == 410


# ===== ENVÍO DE FIRMA (público) =====

class TestSubmitSignature:

    def test_submit_signs_document(self, client, signature_request, email_tasks, db_session):
        token = signature_request["token"]
        response = submit(client, token, signed_pdf=PDF_DATA_URL)
        assert response.status_code == 200
        data = response.json()
        assert data["signature_image_url"] == PNG_DATA_URL
        assert data["signed_pdf_url"] is None  # almacenamiento deshabilitado en tests

        request = db_session.query(SignatureRequest).one()
        assert request.status == SignatureRequestStatus.SIGNED
        signature = db_session.query(Signature).one()
        assert signature.signer_name == "Rosa Quispe"
        assert signature.consent_given is True
        assert signature.consent_text
        assert signature.device_type == "mobile"
        assert signature.user_agent.startswith("Mozilla")

        assert len(email_tasks["confirmation"].calls) == 1

        status = client.get(f"/signatures/status/{token}").json()
        assert status["status"] == "signed"
        assert status["signature"]["id"] == data["id"]

    def test_consent_is_required(self, client, signature_request, db_session):
        response = submit(client, signature_request["token"], consent_given=False)
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "consent_given"
        assert db_session.query(Signature).count() == 0

    def test_image_must_be_data_url(self, client, signature_request):
        response = submit(client, signature_request["token"], signature_image="https://example.com/x.png")
        assert response.status_code == 400

    def test_image_field_is_signature_image(self, client, signature_request):
        """La imagen viaja en signature_image; otro nombre de campo no firma"""
        payload = {"token": signature_request["token"], "signature_data_url": PNG_DATA_URL, "consent_given": True}
        response = client.post("/signatures/submit", json=payload)
        assert response.status_code == 400
        assert [error["field"] for error in response.json()["errors"]] == ["signature_image"]

    def test_second_submit_is_rejected(self, client, signature_request, db_session):
        token = signature_request["token"]
        first = submit(client, token)
        assert first.status_code == 200

        second = submit(client, token)
        assert second.status_code == 400
        body = second.json()
        assert body["error"] == "already_signed"
        assert body["current_state"] == "SIGNED"
        assert body["signed_at"] is not None
        assert db_session.query(Signature).count() == 1

        validate = client.get(f"/signatures/validate/{token}")
        assert validate.status_code == 400
        assert validate.json()["error"] == "already_signed"

    def test_expired_request_cannot_be_signed(self, client, signature_request, db_session):
        token = signature_request["token"]
        set_expires_at(db_session, token, utcnow() - timedelta(seconds=1))

        response = submit(client, token)
        assert response.status_code == 410
        assert response.json()["error"] == "expired"
        assert db_session.query(Signature).count() == 0

    def test_quote_can_be_signed(self, client, auth_headers, sample_client):
        quote = client.post("/documents/quote", json={
            "client_id": str(sample_client.id),
            "items": [{"description": "Diseño", "quantity": "1", "unit_price": "800"}],
        }, headers=auth_headers).json()
        request = client.post("/signatures/request", json={
            "document_type": "quote", "document_id": quote["id"], "signer_email": "a@example.com",
        }, headers=auth_headers).json()

        assert submit(client, request["token"]).status_code == 200


# ===== ESTADO, CANCELACIÓN Y REENVÍO =====

class TestStatusCancelResend:

    def test_status_computes_expiry_without_persisting(self, client, signature_request, db_session):
        token = signature_request["token"]
        set_expires_at(db_session, token, utcnow() - timedelta(hours=1))

        response = client.get(f"/signatures/status/{token}")
        assert response.status_code == 200
        assert response.json()["status"] == "expired"
        assert response.json()["signature"] is None

        db_session.expire_all()
        assert db_session.query(SignatureRequest).one().status == SignatureRequestStatus.PENDING

    def test_cancel_request(self, client, auth_headers, signature_request):
        token = signature_request["token"]
        response = client.post(f"/signatures/{token}/cancel", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        assert client.get(f"/signatures/validate/{token}").status_code == 410
        response = submit(client, token)
        assert response.status_code == 410
        assert response.json()["error"] == "cancelled"

        again = client.post(f"/signatures/{token}/cancel", headers=auth_headers)
        assert again.status_code == 410

    def test_cancel_requires_owner_company(self, client, signature_request, other_company, headers_for):
        response = client.post(
            f"/signatures/{signature_request['token']}/cancel", headers=headers_for(other_company)
        )
        assert response.status_code == 404

    def test_resend_email(self, client, auth_headers, signature_request, email_tasks):
        token = signature_request["token"]
        response = client.post(f"/signatures/{token}/send-email", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["email_queued"] is True
        assert response.json()["sent_at"] is not None
        assert len(email_tasks["request"].calls) == 2

    def test_resend_for_signed_request_fails(self, client, auth_headers, signature_request):
        token = signature_request["token"]
        submit(client, token)
        response = client.post(f"/signatures/{token}/send-email", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "already_signed"

    def test_expiry_sweep(self, db_session, signature_request):
        token = signature_request["token"]
        set_expires_at(db_session, token, utcnow() - timedelta(days=1))

        assert SignatureService(db_session).expire_stale_requests() == 1
        assert SignatureService(db_session).expire_stale_requests() == 0

        db_session.expire_all()
        assert db_session.query(SignatureRequest).one().status == SignatureRequestStatus.EXPIRED

    def test_expiry_sweep_task(self, db_session, signature_request):
        """La tarea periódica usa su propia sesión"""
        set_expires_at(db_session, signature_request["token"], utcnow() - timedelta(hours=2))

        assert expire_signature_requests() == {"status": "completed", "expired": 1}

        db_session.expire_all()
        assert db_session.query(SignatureRequest).one().status == SignatureRequestStatus.EXPIRED


# ===== PROFORMAS FIRMADAS =====

@pytest.fixture
def quote(client, auth_headers, sample_client):
    response = client.post("/documents/quote", json={
        "client_id": str(sample_client.id),
        "items": [{"description": "Instalación", "quantity": "1", "unit_price": "350.00"}],
    }, headers=auth_headers)
    assert response.status_code == 201
    return response.json()


def request_for_quote(client, auth_headers, quote):
    response = client.post("/signatures/request", json={
        "document_type": "quote", "document_id": quote["id"], "signer_email": "cliente@distlima.pe",
    }, headers=auth_headers)
    assert response.status_code == 201
    return response.json()["token"]


class TestQuoteDeletionWithSignatures:

    def test_signed_quote_cannot_be_deleted(self, client, auth_headers, quote, db_session):
        token = request_for_quote(client, auth_headers, quote)
        assert submit(client, token).status_code == 200

        response = client.delete(f"/quotes/{quote['id']}", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"

        assert db_session.query(Signature).count() == 1
        assert client.get(f"/signatures/status/{token}").json()["status"] == "signed"
        assert client.get(f"/documents/quote/{quote['id']}", headers=auth_headers).status_code == 200

    def test_unsigned_requests_are_removed_with_the_quote(self, client, auth_headers, quote, db_session):
        token = request_for_quote(client, auth_headers, quote)

        response = client.delete(f"/quotes/{quote['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert db_session.query(SignatureRequest).count() == 0
        assert client.get(f"/signatures/status/{token}").status_code == 404


# ===== ALMACENAMIENTO =====

class FakeMinio:
    def __init__(self):
        self.objects = {}

    def bucket_exists(self, bucket_name):
        return True

    def put_object(self, bucket_name, key, data, length, content_type):
        self.objects[key] = (data.read(), content_type)


class UnreachableMinio:
    def bucket_exists(self, bucket_name):
        raise MaxRetryError(None, f"/{bucket_name}", reason="Connection refused")

    def put_object(self, *args, **kwargs):
        raise AssertionError("no debe intentar subir sin bucket")


class TestArtifactStore:

    def test_decode_data_url(self):
        mime, payload = decode_data_url(PNG_DATA_URL, "signature_image")
        assert mime == "image/png"
        assert payload.startswith(b"\x89PNG")

    @pytest.mark.parametrize("value", [
        "data:image/png,notbase64",
        "data:image/png;base64,@@@",
        "image/png;base64,AAAA",
        "data:image/png;base64,",
    ])
    def test_decode_rejects_malformed(self, value):
        with pytest.raises(ValidationError):
            decode_data_url(value, "signature_image")

    def test_disabled_store_keeps_data_url(self):
        store = SignatureArtifactStore(enabled=False)
        assert store.store_signature_image(uuid4(), "abc", PNG_DATA_URL) == PNG_DATA_URL
        assert store.store_signed_pdf(uuid4(), "F001-00000001", PDF_DATA_URL) is None

    def test_enabled_store_uploads(self):
        fake = FakeMinio()
        store = SignatureArtifactStore(enabled=True, client=fake)
        tenant_id = UUID("00000000-0000-0000-0000-000000000001")

        image_url = store.store_signature_image(tenant_id, "abc", PNG_DATA_URL)
        pdf_url = store.store_signed_pdf(tenant_id, "F001-00000001", PDF_DATA_URL)

        assert image_url.endswith(f"/{tenant_id}/signatures/abc-signature.png")
        assert pdf_url.endswith(f"/{tenant_id}/signed/F001-00000001-signed.pdf")
        assert fake.objects[f"{tenant_id}/signed/F001-00000001-signed.pdf"] == (b"%PDF-1.4 signed", "application/pdf")

    def test_unreachable_minio_keeps_data_url(self):
        store = SignatureArtifactStore(enabled=True, client=UnreachableMinio())
        assert store.store_signature_image(uuid4(), "abc", PNG_DATA_URL) == PNG_DATA_URL
        assert store.store_signed_pdf(uuid4(), "F001-00000001", PDF_DATA_URL) is None

    def test_submit_survives_unreachable_minio(self, db_session, signature_request):
        """La firma se registra aunque MinIO no responda"""
        service = SignatureService(
            db_session, artifact_store=SignatureArtifactStore(enabled=True, client=UnreachableMinio())
        )
        signature = service.submit_signature(SignatureSubmit(
            token=signature_request["token"], signature_image=PNG_DATA_URL,
            signed_pdf=PDF_DATA_URL, consent_given=True
        ))
        assert signature.signature_image_url == PNG_DATA_URL
        assert signature.signed_pdf_url is None
        assert db_session.query(SignatureRequest).one().status == SignatureRequestStatus.SIGNED


@pytest.mark.parametrize("user_agent, expected", [
    (None, None),
    ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0) Mobile/15E148", "mobile"),
    ("Mozilla/5.0 (Linux; Android 14; Pixel 8)", "mobile"),
    ("Mozilla/5.0 (iPad; CPU OS 17_0)", "tablet"),
    ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "desktop"),
])
def test_detect_device_type(user_agent, expected):
    assert detect_device_type(user_agent) == expected
