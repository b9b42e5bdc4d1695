"""
Tests del ciclo de vida de facturas y proformas

Cubren:
- Creación con numeración automática y cálculo de montos
- Edición con reemplazo de líneas
- Pagos, anulación y estados derivados (vencida)
- Flujo de proformas y conversión a factura
- Tipo de cambio y corrección de fechas
- Envío por correo
- Aislamiento por empresa
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from kombu.exceptions import OperationalError

from billing.common.exceptions import ConflictError, SequenceConflictError, StateError
from billing.database.database import SessionLocal
from billing.modules.clients.models import Client
from billing.modules.documents.models import Invoice, Quote, QuoteStatus, InvoiceStatus
from billing.modules.documents.schemas import DocumentCreate, LineItemCreate
from billing.modules.documents.service import DocumentService
from billing.modules.documents.tasks import expire_quotes
from billing.modules.sequences.models import DocumentType


def document_payload(client_id, **overrides):
    payload = {
        "client_id": str(client_id),
        "items": [
            {"description": "Laptop 14\"", "quantity": "2", "unit_price": "100.00"},
        ],
    }
    payload.update(overrides)
    return payload


def create(client, headers, document_type, client_id, **overrides):
    response = client.post(
        f"/documents/{document_type}", json=document_payload(client_id, **overrides), headers=headers
    )
    assert response.status_code == 201, response.text
    return response.json()


# ===== CREACIÓN =====

class TestCreateDocument:

    def test_create_invoice(self, client, auth_headers, sample_client):
        data = create(client, auth_headers, "invoice", sample_client.id)

        assert data["document_type"] == "invoice"
        assert data["document_number"] == "F001-00000001"
        assert data["status"] == "issued"
        assert data["currency"] == "PEN"
        assert Decimal(data["tax_rate"]) == Decimal("18")
        assert Decimal(data["subtotal"]) == Decimal("200.00")
        assert Decimal(data["tax"]) == Decimal("36.00")
        assert Decimal(data["total"]) == Decimal("236.00")
        assert Decimal(data["balance_due"]) == Decimal("236.00")
        assert len(data["line_items"]) == 1
        assert data["line_items"][0]["unit"] == "UND"
        assert data["line_items"][0]["position"] == 0

    def test_numbers_are_consecutive_per_type(self, client, auth_headers, sample_client):
        first = create(client, auth_headers, "invoice", sample_client.id)
        second = create(client, auth_headers, "invoice", sample_client.id)
        quote = create(client, auth_headers, "quote", sample_client.id)

        assert (first["number"], second["number"]) == (1, 2)
        assert quote["document_number"] == "P001-00000001"

    def test_overrides_series_tax_rate_and_currency(self, client, auth_headers, sample_client):
        data = create(
            client, auth_headers, "invoice", sample_client.id,
            series="F002", tax_rate="0", currency="USD"
        )
        assert data["document_number"] == "F002-00000001"
        assert data["currency"] == "USD"
        assert Decimal(data["tax"]) == Decimal("0.00")
        assert Decimal(data["total"]) == Decimal("200.00")

    def test_line_order_is_preserved(self, client, auth_headers, sample_client):
        items = [
            {"description": "B", "quantity": "1", "unit_price": "5"},
            {"description": "A", "quantity": "1", "unit_price": "7", "discount": "2"},
            {"description": "C", "quantity": "3", "unit_price": "1.10", "unit": "KG"},
        ]
        data = create(client, auth_headers, "quote", sample_client.id, items=items)

        assert [line["description"] for line in data["line_items"]] == ["B", "A", "C"]
        assert [line["position"] for line in data["line_items"]] == [0, 1, 2]
        assert Decimal(data["discount"]) == Decimal("2.00")
        assert Decimal(data["subtotal"]) == Decimal("13.30")

    def test_unknown_client_is_rejected(self, client, auth_headers):
        response = client.post("/documents/invoice", json=document_payload(uuid4()), headers=auth_headers)
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["errors"][0]["field"] == "client_id"

    def test_client_from_other_company_is_rejected(self, client, auth_headers, db_session, other_company):
        from billing.modules.clients.models import Client

        foreign = Client(tenant_id=other_company.id, name="Ajeno")
        db_session.add(foreign)
        db_session.commit()

        response = client.post("/documents/invoice", json=document_payload(foreign.id), headers=auth_headers)
        assert response.status_code == 400

    @pytest.mark.parametrize("items", [
        [],
        [{"description": "X", "quantity": "0", "unit_price": "10"}],
        [{"description": "X", "quantity": "1", "unit_price": "-1"}],
        [{"description": "X", "quantity": "1", "unit_price": "10", "discount": "-1"}],
    ])
    def test_invalid_items_are_rejected(self, client, auth_headers, sample_client, items):
        response = client.post(
            "/documents/invoice", json=document_payload(sample_client.id, items=items), headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.parametrize("item, field", [
        ({"description": "X", "quantity": "1", "unit_price": "0.004"}, "unit_price"),
        ({"description": "X", "quantity": "3", "unit_price": "10.005"}, "unit_price"),
        ({"description": "X", "quantity": "1.2345", "unit_price": "10"}, "quantity"),
        ({"description": "X", "quantity": "1", "unit_price": "10", "discount": "0.125"}, "discount"),
    ])
    def test_more_decimals_than_stored_are_rejected(self, client, auth_headers, sample_client, item, field):
        """Los montos se guardan con 2 decimales y la cantidad con 3; no se redondea en silencio"""
        response = client.post(
            "/documents/invoice", json=document_payload(sample_client.id, items=[item]), headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"].endswith(field)

    def test_tax_rate_with_more_than_two_decimals_is_rejected(self, client, auth_headers, sample_client):
        response = client.post(
            "/documents/invoice", json=document_payload(sample_client.id, tax_rate="18.005"), headers=auth_headers
        )
        assert response.status_code == 400

    def test_stored_lines_reproduce_totals(self, client, auth_headers, sample_client):
        items = [{"description": "Cable", "quantity": "3.125", "unit_price": "10.01", "discount": "0.05"}]
        data = create(client, auth_headers, "invoice", sample_client.id, items=items)
        assert Decimal(data["line_items"][0]["quantity"]) == Decimal("3.125")
        assert Decimal(data["line_items"][0]["unit_price"]) == Decimal("10.01")

        response = client.put(f"/documents/invoice/{data['id']}", json={"tax_rate": "18"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["total"] == data["total"]
        assert response.json()["subtotal"] == data["subtotal"]

    def test_due_date_before_issue_date_is_rejected(self, client, auth_headers, sample_client):
        payload = document_payload(sample_client.id, issue_date="2026-03-10", due_date="2026-03-01")
        response = client.post("/documents/invoice", json=payload, headers=auth_headers)
        assert response.status_code == 400

    def test_unauthenticated_request_is_rejected(self, client, sample_company, sample_client):
        response = client.post(
            "/documents/invoice",
            json=document_payload(sample_client.id),
            headers={"X-Company-ID": str(sample_company.id)}
        )
        assert response.status_code in (401, 403)


class TestConcurrentCreation:

    def test_parallel_creates_get_distinct_consecutive_numbers(self, sample_company, sample_client):
        company_id = sample_company.id
        data = DocumentCreate(
            client_id=sample_client.id,
            items=[LineItemCreate(description="Item", quantity=Decimal("1"), unit_price=Decimal("10"))]
        )

        def create_one(_):
            db = SessionLocal()
            try:
                invoice = DocumentService(db).create_document(DocumentType.INVOICE, data, company_id)
                return invoice.number
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=5) as pool:
            numbers = list(pool.map(create_one, range(10)))

        assert sorted(numbers) == list(range(1, 11))

    def test_allocation_conflict_is_retried(self, db_session, sample_company, sample_client):
        class FlakyAllocator:
            calls = 0

            def next_number(self, company_id, document_type, series):
                self.calls += 1
                if self.calls == 1:
                    raise SequenceConflictError("lock timeout")
                return 77

        allocator = FlakyAllocator()
        data = DocumentCreate(
            client_id=sample_client.id,
            items=[LineItemCreate(description="Item", quantity=Decimal("1"), unit_price=Decimal("10"))]
        )
        invoice = DocumentService(db_session, allocator=allocator).create_document(
            DocumentType.INVOICE, data, sample_company.id
        )
        assert invoice.number == 77
        assert allocator.calls == 2

    def test_duplicate_number_becomes_conflict(self, db_session, sample_company, sample_client):
        class FixedAllocator:
            def next_number(self, company_id, document_type, series):
                return 1

        data = DocumentCreate(
            client_id=sample_client.id,
            items=[LineItemCreate(description="Item", quantity=Decimal("1"), unit_price=Decimal("10"))]
        )
        service = DocumentService(db_session, allocator=FixedAllocator())
        service.create_document(DocumentType.QUOTE, data, sample_company.id)

        with pytest.raises(ConflictError):
            service.create_document(DocumentType.QUOTE, data, sample_company.id)


# ===== LECTURA Y EDICIÓN =====

class TestReadAndUpdate:

    def test_round_trip_totals(self, client, auth_headers, sample_client):
        items = [
            {"description": "A", "quantity": "1.5", "unit_price": "10.33"},
            {"description": "B", "quantity": "3", "unit_price": "0.03"},
        ]
        created = create(client, auth_headers, "invoice", sample_client.id, items=items)

        response = client.get(f"/documents/invoice/{created['id']}", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()

        assert data["total"] == created["total"]
        assert Decimal(data["subtotal"]) == sum(Decimal(line["subtotal"]) for line in data["line_items"])
        assert Decimal(data["total"]) == Decimal(data["subtotal"]) + Decimal(data["tax"])

    def test_other_company_cannot_read(self, client, auth_headers, sample_client, other_company, headers_for):
        created = create(client, auth_headers, "invoice", sample_client.id)
        headers = headers_for(other_company)
        response = client.get(f"/documents/invoice/{created['id']}", headers=headers)
        assert response.status_code == 404

    def test_wrong_type_is_not_found(self, client, auth_headers, sample_client):
        created = create(client, auth_headers, "invoice", sample_client.id)
        response = client.get(f"/documents/quote/{created['id']}", headers=auth_headers)
        assert response.status_code == 404

    def test_update_replaces_lines_and_recomputes(self, client, auth_headers, sample_client):
        created = create(client, auth_headers, "invoice", sample_client.id)
        update = {
            "notes": "Entrega en almacén",
            "items": [
                {"description": "Monitor", "quantity": "1", "unit_price": "500.00"},
                {"description": "Cable", "quantity": "2", "unit_price": "10.00", "discount": "5.00"},
            ],
        }
        response = client.put(f"/documents/invoice/{created['id']}", json=update, headers=auth_headers)
        assert response.status_code == 200
        data = response.json()

        assert data["number"] == created["number"]
        assert data["notes"] == "Entrega en almacén"
        assert [line["description"] for line in data["line_items"]] == ["Monitor", "Cable"]
        assert Decimal(data["subtotal"]) == Decimal("515.00")
        assert Decimal(data["tax"]) == Decimal("92.70")
        assert Decimal(data["total"]) == Decimal("607.70")

    def test_update_uses_stored_tax_rate(self, client, auth_headers, sample_client, db_session, sample_company):
        created = create(client, auth_headers, "quote", sample_client.id)
        sample_company.tax_rate = Decimal("10.00")
        db_session.commit()

        update = {"items": [{"description": "X", "quantity": "1", "unit_price": "100"}]}
        data = client.put(f"/documents/quote/{created['id']}", json=update, headers=auth_headers).json()
        assert Decimal(data["tax"]) == Decimal("18.00")

    def test_update_tax_rate_only_recomputes_existing_lines(self, client, auth_headers, sample_client):
        created = create(client, auth_headers, "quote", sample_client.id)
        data = client.put(
            f"/documents/quote/{created['id']}", json={"tax_rate": "0"}, headers=auth_headers
        ).json()
        assert Decimal(data["total"]) == Decimal("200.00")
        assert len(data["line_items"]) == 1

    def test_update_below_paid_amount_is_rejected(self, client, auth_headers, sample_client):
        created = create(client, auth_headers, "invoice", sample_client.id)
        client.post(
            f"/invoices/{created['id']}/payments", json={"amount": "100.00", "method": "cash"}, headers=auth_headers
        )
        update = {"items": [{"description": "X", "quantity": "1", "unit_price": "50"}]}
        response = client.put(f"/documents/invoice/{created['id']}", json=update, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "items"

    def test_void_invoice_cannot_be_edited(self, client, auth_headers, sample_client):
        created = create(client, auth_headers, "invoice", sample_client.id)
        client.post(f"/invoices/{created['id']}/void", headers=auth_headers)

        response = client.put(f"/documents/invoice/{created['id']}", json={"notes": "x"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"
        assert response.json()["current_state"] == "void"

    def test_empty_items_on_update_are_rejected(self, client, auth_headers, sample_client):
        created = create(client, auth_headers, "invoice", sample_client.id)
        response = client.put(f"/documents/invoice/{created['id']}", json={"items": []}, headers=auth_headers)
        assert response.status_code == 400


# ===== FACTURAS: PAGOS Y ANULACIÓN =====

class TestInvoicePayments:

    def test_partial_then_full_payment(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)
        url = f"/invoices/{invoice['id']}/payments"

        first = client.post(url, json={"amount": "100.00", "method": "transfer", "reference": "OP-1"},
                            headers=auth_headers)
        assert first.status_code == 201
        assert client.get(f"/documents/invoice/{invoice['id']}", headers=auth_headers).json()["status"] == "issued"

        second = client.post(url, json={"amount": "136.00", "method": "wallet"}, headers=auth_headers)
        assert second.status_code == 201

        data = client.get(f"/documents/invoice/{invoice['id']}", headers=auth_headers).json()
        assert data["status"] == "paid"
        assert Decimal(data["paid_amount"]) == Decimal("236.00")
        assert Decimal(data["balance_due"]) == Decimal("0.00")

        payments = client.get(url, headers=auth_headers).json()
        assert [Decimal(p["amount"]) for p in payments] == [Decimal("100.00"), Decimal("136.00")]

    def test_overpayment_is_rejected(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)
        url = f"/invoices/{invoice['id']}/payments"
        client.post(url, json={"amount": "200.00", "method": "cash"}, headers=auth_headers)

        response = client.post(url, json={"amount": "36.01", "method": "cash"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert len(client.get(url, headers=auth_headers).json()) == 1

    def test_paid_invoice_accepts_no_more_payments(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)
        url = f"/invoices/{invoice['id']}/payments"
        client.post(url, json={"amount": "236.00", "method": "card"}, headers=auth_headers)

        response = client.post(url, json={"amount": "0.01", "method": "card"}, headers=auth_headers)
        assert response.status_code == 400

    def test_void_invoice_rejects_payments(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)
        client.post(f"/invoices/{invoice['id']}/void", json={"reason": "Error de digitación"}, headers=auth_headers)

        response = client.post(
            f"/invoices/{invoice['id']}/payments", json={"amount": "10", "method": "cash"}, headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"

    def test_void_invoice(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)

        response = client.post(f"/invoices/{invoice['id']}/void", json={"reason": "Duplicada"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "void"
        assert "[ANULADA] Duplicada" in response.json()["notes"]

        again = client.post(f"/invoices/{invoice['id']}/void", headers=auth_headers)
        assert again.status_code == 400
        assert again.json()["current_state"] == "void"

    def test_paid_invoice_cannot_be_voided(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)
        client.post(f"/invoices/{invoice['id']}/payments", json={"amount": "236", "method": "cash"},
                    headers=auth_headers)

        response = client.post(f"/invoices/{invoice['id']}/void", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["current_state"] == "paid"

    def test_overdue_is_derived(self, client, auth_headers, sample_client):
        past = date.today() - timedelta(days=30)
        invoice = create(
            client, auth_headers, "invoice", sample_client.id,
            issue_date=past.isoformat(), due_date=(past + timedelta(days=5)).isoformat()
        )
        assert invoice["status"] == "issued"
        assert invoice["display_status"] == "overdue"


# ===== PROFORMAS =====

class TestQuoteWorkflow:

    def test_approve_reject_and_reopen(self, client, auth_headers, sample_client):
        quote = create(client, auth_headers, "quote", sample_client.id)
        url = f"/quotes/{quote['id']}/status"

        assert client.post(url, json={"status": "approved"}, headers=auth_headers).json()["status"] == "approved"
        assert client.post(url, json={"status": "pending"}, headers=auth_headers).json()["status"] == "pending"
        assert client.post(url, json={"status": "rejected"}, headers=auth_headers).json()["status"] == "rejected"

        response = client.post(url, json={"status": "approved"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["current_state"] == "rejected"

    def test_unknown_status_is_rejected(self, client, auth_headers, sample_client):
        quote = create(client, auth_headers, "quote", sample_client.id)
        response = client.post(f"/quotes/{quote['id']}/status", json={"status": "invoiced"}, headers=auth_headers)
        assert response.status_code == 400

    def test_quote_past_validity_reads_as_expired(self, client, auth_headers, sample_client, db_session):
        past = date.today() - timedelta(days=20)
        quote = create(
            client, auth_headers, "quote", sample_client.id,
            issue_date=past.isoformat(), valid_until=(past + timedelta(days=10)).isoformat()
        )
        assert quote["status"] == "pending"
        assert quote["display_status"] == "expired"

        response = client.post(f"/quotes/{quote['id']}/status", json={"status": "approved"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["current_state"] == "expired"

        stored = db_session.get(Quote, UUID(quote["id"]))
        assert stored.status == QuoteStatus.EXPIRED

    def test_delete_quote(self, client, auth_headers, sample_client):
        quote = create(client, auth_headers, "quote", sample_client.id)

        response = client.delete(f"/quotes/{quote['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert client.get(f"/documents/quote/{quote['id']}", headers=auth_headers).status_code == 404

    def test_expire_overdue_quotes_sweep(self, db_session, sample_company, sample_client):
        past = date.today() - timedelta(days=15)
        service = DocumentService(db_session)
        items = [LineItemCreate(description="Item", quantity=Decimal("1"), unit_price=Decimal("10"))]

        stale = service.create_document(DocumentType.QUOTE, DocumentCreate(
            client_id=sample_client.id, issue_date=past, valid_until=past + timedelta(days=1), items=items
        ), sample_company.id)
        fresh = service.create_document(DocumentType.QUOTE, DocumentCreate(
            client_id=sample_client.id, valid_until=date.today() + timedelta(days=30), items=items
        ), sample_company.id)
        approved = service.create_document(DocumentType.QUOTE, DocumentCreate(
            client_id=sample_client.id, issue_date=past, valid_until=past + timedelta(days=1), items=items
        ), sample_company.id)
        approved.status = QuoteStatus.APPROVED
        db_session.commit()

        assert service.expire_overdue_quotes() == 1

        db_session.expire_all()
        assert db_session.get(Quote, stale.id).status == QuoteStatus.EXPIRED
        assert db_session.get(Quote, fresh.id).status == QuoteStatus.PENDING
        assert db_session.get(Quote, approved.id).status == QuoteStatus.APPROVED

    def test_expire_quotes_task(self, db_session, sample_company, sample_client):
        past = date.today() - timedelta(days=3)
        quote = DocumentService(db_session).create_document(DocumentType.QUOTE, DocumentCreate(
            client_id=sample_client.id, issue_date=past, valid_until=past,
            items=[LineItemCreate(description="Item", quantity=Decimal("1"), unit_price=Decimal("10"))]
        ), sample_company.id)

        assert expire_quotes() == {"status": "completed", "expired": 1}

        db_session.expire_all()
        assert db_session.get(Quote, quote.id).status == QuoteStatus.EXPIRED


class TestQuoteConversion:

    def test_convert_copies_totals_and_lines(self, client, auth_headers, sample_client, db_session, sample_company):
        items = [
            {"description": "Servicio", "quantity": "1.5", "unit_price": "10.33"},
            {"description": "Insumo", "quantity": "4", "unit_price": "2.50", "discount": "1.00", "unit": "KG"},
        ]
        quote = create(client, auth_headers, "quote", sample_client.id, items=items, notes="Según proforma")
        client.post(f"/quotes/{quote['id']}/status", json={"status": "approved"}, headers=auth_headers)

        # La tasa de la empresa cambia; la factura conserva los montos de la proforma
        sample_company.tax_rate = Decimal("10.00")
        db_session.commit()

        response = client.post(f"/quotes/{quote['id']}/convert", headers=auth_headers)
        assert response.status_code == 201
        invoice = response.json()

        assert invoice["document_number"] == "F001-00000001"
        assert invoice["source_quote_id"] == quote["id"]
        assert invoice["status"] == "issued"
        assert invoice["notes"] == "Según proforma"
        for field in ("tax_rate", "subtotal", "discount", "tax", "total"):
            assert Decimal(invoice[field]) == Decimal(quote[field])
        assert [
            (line["description"], line["unit"], Decimal(line["total"])) for line in invoice["line_items"]
        ] == [
            (line["description"], line["unit"], Decimal(line["total"])) for line in quote["line_items"]
        ]

        converted = client.get(f"/documents/quote/{quote['id']}", headers=auth_headers).json()
        assert converted["status"] == "invoiced"
        assert converted["converted_invoice_id"] == invoice["id"]

    def test_second_conversion_fails(self, client, auth_headers, sample_client, db_session):
        quote = create(client, auth_headers, "quote", sample_client.id)
        assert client.post(f"/quotes/{quote['id']}/convert", headers=auth_headers).status_code == 201

        response = client.post(f"/quotes/{quote['id']}/convert", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"
        assert response.json()["current_state"] == "invoiced"
        assert db_session.query(Invoice).count() == 1

    def test_rejected_quote_cannot_be_converted(self, client, auth_headers, sample_client):
        quote = create(client, auth_headers, "quote", sample_client.id)
        client.post(f"/quotes/{quote['id']}/status", json={"status": "rejected"}, headers=auth_headers)

        response = client.post(f"/quotes/{quote['id']}/convert", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["current_state"] == "rejected"

    def test_invoiced_quote_cannot_be_edited_or_deleted(self, client, auth_headers, sample_client):
        quote = create(client, auth_headers, "quote", sample_client.id)
        client.post(f"/quotes/{quote['id']}/convert", headers=auth_headers)

        assert client.put(
            f"/documents/quote/{quote['id']}", json={"notes": "x"}, headers=auth_headers
        ).status_code == 400
        assert client.delete(f"/quotes/{quote['id']}", headers=auth_headers).status_code == 400

    def test_service_raises_state_error(self, db_session, sample_company, sample_client):
        service = DocumentService(db_session)
        quote = service.create_document(DocumentType.QUOTE, DocumentCreate(
            client_id=sample_client.id,
            items=[LineItemCreate(description="Item", quantity=Decimal("2"), unit_price=Decimal("100"))]
        ), sample_company.id)

        invoice = service.convert_quote_to_invoice(quote.id, sample_company.id)
        assert invoice.total == Decimal("236.00")
        assert invoice.status == InvoiceStatus.ISSUED

        with pytest.raises(StateError) as exc_info:
            service.convert_quote_to_invoice(quote.id, sample_company.id)
        assert exc_info.value.current_state == QuoteStatus.INVOICED


# ===== TIPO DE CAMBIO Y CORRECCIÓN DE FECHAS =====

class TestExchangeRateAndDates:

    def test_exchange_rate_is_stored_and_returned(self, client, auth_headers, sample_client):
        created = create(client, auth_headers, "invoice", sample_client.id, currency="USD", exchange_rate="3.7520")
        assert Decimal(created["exchange_rate"]) == Decimal("3.7520")

        fetched = client.get(f"/documents/invoice/{created['id']}", headers=auth_headers).json()
        assert Decimal(fetched["exchange_rate"]) == Decimal("3.7520")

    def test_exchange_rate_is_optional(self, client, auth_headers, sample_client):
        created = create(client, auth_headers, "invoice", sample_client.id)
        assert created["exchange_rate"] is None

    @pytest.mark.parametrize("rate", ["3.75201", "0", "-1"])
    def test_invalid_exchange_rate_is_rejected(self, client, auth_headers, sample_client, rate):
        response = client.post(
            "/documents/invoice", json=document_payload(sample_client.id, exchange_rate=rate), headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "exchange_rate"

    def test_exchange_rate_is_updated(self, client, auth_headers, sample_client):
        quote = create(client, auth_headers, "quote", sample_client.id, currency="USD", exchange_rate="3.70")
        response = client.put(
            f"/documents/quote/{quote['id']}", json={"exchange_rate": "3.8000"}, headers=auth_headers
        )
        assert response.status_code == 200
        assert Decimal(response.json()["exchange_rate"]) == Decimal("3.8")
        assert response.json()["total"] == quote["total"]

    def test_conversion_copies_exchange_rate(self, client, auth_headers, sample_client):
        quote = create(client, auth_headers, "quote", sample_client.id, currency="USD", exchange_rate="3.6500")

        invoice = client.post(f"/quotes/{quote['id']}/convert", headers=auth_headers).json()
        assert invoice["currency"] == "USD"
        assert Decimal(invoice["exchange_rate"]) == Decimal("3.65")

    def test_dates_of_paid_invoice_can_be_corrected(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)
        client.post(f"/invoices/{invoice['id']}/payments", json={"amount": "236", "method": "cash"},
                    headers=auth_headers)
        issue = date.today() - timedelta(days=3)

        response = client.put(
            f"/invoices/{invoice['id']}/dates",
            json={"issue_date": issue.isoformat(), "due_date": (issue + timedelta(days=30)).isoformat()},
            headers=auth_headers
        )
        assert response.status_code == 200
        data = response.json()
        assert data["issue_date"] == issue.isoformat()
        assert data["due_date"] == (issue + timedelta(days=30)).isoformat()
        assert data["status"] == "paid"
        assert data["total"] == invoice["total"]
        assert len(data["line_items"]) == 1

    def test_general_edit_of_paid_invoice_is_still_rejected(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)
        client.post(f"/invoices/{invoice['id']}/payments", json={"amount": "236", "method": "cash"},
                    headers=auth_headers)

        response = client.put(
            f"/documents/invoice/{invoice['id']}", json={"issue_date": date.today().isoformat()},
            headers=auth_headers
        )
        assert response.status_code == 400

    def test_dates_of_void_invoice_cannot_be_changed(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)
        client.post(f"/invoices/{invoice['id']}/void", headers=auth_headers)

        response = client.put(
            f"/invoices/{invoice['id']}/dates", json={"issue_date": date.today().isoformat()}, headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"
        assert response.json()["current_state"] == "void"

    def test_due_date_before_issue_date_is_rejected(self, client, auth_headers, sample_client):
        invoice = create(client, auth_headers, "invoice", sample_client.id)
        today = date.today()

        response = client.put(
            f"/invoices/{invoice['id']}/dates",
            json={"issue_date": today.isoformat(), "due_date": (today - timedelta(days=1)).isoformat()},
            headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


# ===== ENVÍO POR CORREO =====

class TestSendDocumentEmail:

    def test_invoice_email_defaults_to_client_address(self, client, auth_headers, sample_client, email_tasks):
        invoice = create(client, auth_headers, "invoice", sample_client.id, due_date=date.today().isoformat())

        response = client.post(f"/invoices/{invoice['id']}/send-email", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {
            "message": "Email encolado para envío",
            "recipient": "compras@distlima.pe",
            "email_queued": True,
        }

        (args, _), = email_tasks["invoice"].calls
        context = args[0]
        assert context["to"] == "compras@distlima.pe"
        assert context["document_number"] == "F001-00000001"
        assert context["client_name"] == "Distribuidora Lima E.I.R.L."
        assert context["company_name"] == "Comercial Andina S.A.C."
        assert Decimal(context["total"]) == Decimal("236.00")
        assert context["due_date"] == date.today().isoformat()
        assert context["subject"] is None
        assert context["locale"] == "es"
        assert email_tasks["quote"].calls == []

    def test_explicit_recipient_subject_and_locale(self, client, auth_headers, sample_client, email_tasks):
        invoice = create(client, auth_headers, "invoice", sample_client.id)

        response = client.post(
            f"/invoices/{invoice['id']}/send-email",
            json={"to": "pagos@distlima.pe", "subject": "Su factura", "message": "Adjuntamos el detalle.",
                  "locale": "en"},
            headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json()["recipient"] == "pagos@distlima.pe"

        (args, _), = email_tasks["invoice"].calls
        assert args[0]["to"] == "pagos@distlima.pe"
        assert args[0]["subject"] == "Su factura"
        assert args[0]["message"] == "Adjuntamos el detalle."
        assert args[0]["locale"] == "en"

    def test_invalid_recipient_is_rejected(self, client, auth_headers, sample_client, email_tasks):
        invoice = create(client, auth_headers, "invoice", sample_client.id)

        response = client.post(
            f"/invoices/{invoice['id']}/send-email", json={"to": "no-es-un-correo"}, headers=auth_headers
        )
        assert response.status_code == 400
        assert email_tasks["invoice"].calls == []

    def test_client_without_email_needs_recipient(self, client, auth_headers, sample_company, db_session,
                                                  email_tasks):
        walk_in = Client(tenant_id=sample_company.id, name="Cliente Varios")
        db_session.add(walk_in)
        db_session.commit()
        invoice = create(client, auth_headers, "invoice", walk_in.id)

        response = client.post(f"/invoices/{invoice['id']}/send-email", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["errors"] == [
            {"field": "to", "message": "El email del destinatario es requerido"}
        ]
        assert email_tasks["invoice"].calls == []

    def test_broker_failure_is_reported(self, client, auth_headers, sample_client, email_tasks):
        def broken_delay(*args, **kwargs):
            raise OperationalError("Error 111 connecting to redis:6379")

        email_tasks["invoice"].delay = broken_delay
        invoice = create(client, auth_headers, "invoice", sample_client.id)

        response = client.post(f"/invoices/{invoice['id']}/send-email", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["email_queued"] is False
        assert response.json()["recipient"] == "compras@distlima.pe"

        fetched = client.get(f"/documents/invoice/{invoice['id']}", headers=auth_headers).json()
        assert fetched["status"] == "issued"

    def test_quote_email(self, client, auth_headers, sample_client, email_tasks):
        valid_until = date.today() + timedelta(days=15)
        quote = create(client, auth_headers, "quote", sample_client.id, valid_until=valid_until.isoformat())

        response = client.post(f"/quotes/{quote['id']}/send-email", json={}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["email_queued"] is True

        (args, _), = email_tasks["quote"].calls
        assert args[0]["document_number"] == "P001-00000001"
        assert args[0]["valid_until"] == valid_until.isoformat()
        assert email_tasks["invoice"].calls == []

    def test_invoice_id_on_quote_route_is_not_found(self, client, auth_headers, sample_client, email_tasks):
        invoice = create(client, auth_headers, "invoice", sample_client.id)

        response = client.post(f"/quotes/{invoice['id']}/send-email", headers=auth_headers)
        assert response.status_code == 404
        assert email_tasks["quote"].calls == []

    def test_other_company_cannot_send(self, client, auth_headers, sample_client, other_company, headers_for,
                                       email_tasks):
        invoice = create(client, auth_headers, "invoice", sample_client.id)

        response = client.post(f"/invoices/{invoice['id']}/send-email", headers=headers_for(other_company))
        assert response.status_code == 404
        assert email_tasks["invoice"].calls == []
