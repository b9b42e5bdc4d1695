"""
Tests de la configuración de facturación de la empresa
"""
from decimal import Decimal


class TestBillingSettings:

    def test_get_current_company(self, client, auth_headers, sample_company):
        response = client.get("/company/", headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == str(sample_company.id)
        assert Decimal(data["tax_rate"]) == Decimal("18")
        assert data["invoice_series"] == "F001"

    def test_update_applies_to_new_documents_only(self, client, auth_headers, sample_client):
        items = [{"description": "X", "quantity": "1", "unit_price": "100"}]
        before = client.post(
            "/documents/invoice", json={"client_id": str(sample_client.id), "items": items}, headers=auth_headers
        ).json()

        response = client.patch(
            "/company/billing-settings",
            json={"tax_rate": "10", "invoice_series": "F777", "currency": "USD"},
            headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json()["invoice_series"] == "F777"

        after = client.post(
            "/documents/invoice", json={"client_id": str(sample_client.id), "items": items}, headers=auth_headers
        ).json()
        assert after["document_number"] == "F777-00000001"
        assert after["currency"] == "USD"
        assert Decimal(after["total"]) == Decimal("110.00")

        unchanged = client.get(f"/documents/invoice/{before['id']}", headers=auth_headers).json()
        assert Decimal(unchanged["total"]) == Decimal("118.00")
        assert unchanged["document_number"] == "F001-00000001"

    def test_invalid_tax_rate(self, client, auth_headers):
        response = client.patch("/company/billing-settings", json={"tax_rate": "150"}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "tax_rate"
