"""
Tests del envío de correos: documentos y firmas
"""
import smtplib

import pytest

from billing.modules.email.service import EmailDeliveryError, EmailService
from billing.modules.email.tasks import send_invoice_email_task, send_signature_request_email_task
import billing.modules.email.tasks as email_tasks_module


@pytest.fixture
def context():
    return {
        "signer_email": "cliente@distlima.pe",
        "signer_name": "Rosa Quispe",
        "token": "ab" * 32,
        "document_type": "invoice",
        "document_number": "F001-00000007",
        "company_name": "Comercial Andina S.A.C.",
        "company_email": "facturacion@andina.pe",
        "total": "236.00",
        "currency": "PEN",
        "expires_at": "2026-10-26T10:00:00+00:00",
    }


@pytest.fixture
def document_context():
    return {
        "to": "compras@distlima.pe",
        "subject": None,
        "message": None,
        "locale": "es",
        "document_number": "F001-00000007",
        "company_name": "Comercial Andina S.A.C.",
        "company_tax_id": "20123456789",
        "company_email": "facturacion@andina.pe",
        "client_name": "Distribuidora Lima E.I.R.L.",
        "client_document_type": "RUC",
        "client_document_number": "20987654321",
        "issue_date": "2026-10-19",
        "due_date": "2026-11-18",
        "total": "236.00",
        "currency": "PEN",
    }


class RecordingEmailService(EmailService):
    def __init__(self):
        super().__init__()
        self.sent = []
        self.texts = []

    def send_email(self, to_emails, subject, html_content=None, text_content=None):
        self.sent.append((to_emails, subject, html_content))
        self.texts.append(text_content)


class TestEmailService:

    def test_signature_request_email(self, context):
        service = RecordingEmailService()
        service.send_signature_request(context)

        (to_emails, subject, html), = service.sent
        assert to_emails == ["cliente@distlima.pe"]
        assert subject == "Firma requerida: Factura F001-00000007"
        assert f"/sign/{context['token']}" in html
        assert "Comercial Andina S.A.C." in html

    def test_confirmation_goes_to_signer_and_company(self, context):
        service = RecordingEmailService()
        service.send_signature_confirmation(dict(context, signed_at="2026-10-20T09:00:00+00:00"))

        recipients = [to for to, _, _ in service.sent]
        assert recipients == [["cliente@distlima.pe"], ["facturacion@andina.pe"]]
        assert "Rosa Quispe" in service.sent[1][1]

    def test_confirmation_without_company_email(self, context):
        service = RecordingEmailService()
        service.send_signature_confirmation(dict(context, company_email=None, signed_at="2026-10-20"))
        assert len(service.sent) == 1

    def test_english_subjects(self, context):
        service = RecordingEmailService()
        service.locale = "en"
        service.send_signature_request(dict(context, document_type="quote"))
        assert service.sent[0][1] == "Signature Required: Quote F001-00000007"

    def test_smtp_failure_raises(self, monkeypatch):
        service = EmailService()

        def refuse(*args, **kwargs):
            raise smtplib.SMTPConnectError(421, "unavailable")

        monkeypatch.setattr(service, "_create_smtp_connection", refuse)
        with pytest.raises(EmailDeliveryError):
            service.send_email(["a@example.com"], "Asunto", html_content="<p>x</p>")


class TestDocumentEmail:

    def test_invoice_email_defaults(self, document_context):
        service = RecordingEmailService()
        service.send_invoice(document_context)

        (to_emails, subject, html), = service.sent
        assert to_emails == ["compras@distlima.pe"]
        assert subject == "Factura F001-00000007 - Distribuidora Lima E.I.R.L."
        assert "Le enviamos la factura F001-00000007" in service.texts[0]
        assert "PEN 236.00" in html
        assert "20987654321" in html
        assert "2026-11-18" in html

    def test_custom_subject_and_message(self, document_context):
        service = RecordingEmailService()
        service.send_invoice(dict(document_context, subject="Su factura de octubre", message="Adjuntamos el detalle."))

        (_, subject, html), = service.sent
        assert subject == "Su factura de octubre"
        assert service.texts[0] == "Adjuntamos el detalle."
        assert "Adjuntamos el detalle." in html

    def test_quote_email_in_english(self, document_context):
        context = dict(document_context, locale="en", document_number="P001-00000003", valid_until="2026-11-03")
        del context["due_date"]
        service = RecordingEmailService()
        service.send_quote(context)

        (_, subject, html), = service.sent
        assert subject == "Quote P001-00000003 - Distribuidora Lima E.I.R.L."
        assert "valid until 2026-11-03" in html
        assert "no fiscal value" in html
        assert 'lang="en"' in html

    def test_unknown_locale_falls_back(self, document_context):
        service = RecordingEmailService()
        service.send_invoice(dict(document_context, locale="fr"))
        assert service.sent[0][1].startswith("Factura ")


class TestEmailTasks:

    def test_task_sends_email(self, context, monkeypatch):
        sent = []
        monkeypatch.setattr(email_tasks_module.email_service, "send_signature_request", sent.append)

        result = send_signature_request_email_task(context)
        assert result == {"status": "success", "email": "cliente@distlima.pe"}
        assert sent == [context]

    def test_task_propagates_failure_for_retry(self, context, monkeypatch):
        def fail(_):
            raise EmailDeliveryError("smtp down")

        monkeypatch.setattr(email_tasks_module.email_service, "send_signature_request", fail)
        with pytest.raises(EmailDeliveryError):
            send_signature_request_email_task(context)

    def test_invoice_task_sends_email(self, document_context, monkeypatch):
        sent = []
        monkeypatch.setattr(email_tasks_module.email_service, "send_invoice", sent.append)

        result = send_invoice_email_task(document_context)
        assert result == {"status": "success", "email": "compras@distlima.pe"}
        assert sent == [document_context]

    def test_invoice_task_propagates_failure_for_retry(self, document_context, monkeypatch):
        def fail(_):
            raise EmailDeliveryError("smtp down")

        monkeypatch.setattr(email_tasks_module.email_service, "send_invoice", fail)
        with pytest.raises(EmailDeliveryError):
            send_invoice_email_task(document_context)
