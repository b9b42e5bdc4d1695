"""
Tests de la asignación de números correlativos
"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from billing.common.exceptions import ValidationError
from billing.modules.sequences.models import DocumentType, SeriesCounter
from billing.modules.sequences.service import SequenceAllocator, format_document_number


def test_format_document_number():
    assert format_document_number("F001", 42) == "F001-00000042"


class TestSequenceAllocator:

    def test_first_number_creates_counter(self, session_factory, db_session, sample_company):
        allocator = SequenceAllocator(session_factory)

        assert allocator.next_number(sample_company.id, DocumentType.INVOICE, "F001") == 1

        counter = db_session.query(SeriesCounter).filter(SeriesCounter.tenant_id == sample_company.id).one()
        assert counter.last_number == 1
        assert counter.is_active

    def test_sequential_numbers(self, session_factory, sample_company):
        allocator = SequenceAllocator(session_factory)
        numbers = [allocator.next_number(sample_company.id, DocumentType.INVOICE, "F001") for _ in range(5)]
        assert numbers == [1, 2, 3, 4, 5]

    def test_series_and_types_are_independent(self, session_factory, sample_company, other_company):
        allocator = SequenceAllocator(session_factory)
        allocator.next_number(sample_company.id, DocumentType.INVOICE, "F001")
        allocator.next_number(sample_company.id, DocumentType.INVOICE, "F001")

        assert allocator.next_number(sample_company.id, DocumentType.INVOICE, "F002") == 1
        assert allocator.next_number(sample_company.id, DocumentType.QUOTE, "F001") == 1
        assert allocator.next_number(other_company.id, DocumentType.INVOICE, "F001") == 1

    def test_concurrent_allocations_are_unique(self, session_factory, sample_company):
        allocator = SequenceAllocator(session_factory)
        company_id = sample_company.id
        allocator.next_number(company_id, DocumentType.INVOICE, "F001")

        def allocate(_):
            return allocator.next_number(company_id, DocumentType.INVOICE, "F001")

        with ThreadPoolExecutor(max_workers=8) as pool:
            numbers = list(pool.map(allocate, range(40)))

        assert len(set(numbers)) == 40
        assert sorted(numbers) == list(range(2, 42))

    def test_inactive_series_is_rejected(self, session_factory, db_session, sample_company):
        db_session.add(SeriesCounter(
            tenant_id=sample_company.id,
            document_type=DocumentType.INVOICE,
            series="F009",
            last_number=7,
            is_active=False
        ))
        db_session.commit()

        allocator = SequenceAllocator(session_factory)
        with pytest.raises(ValidationError):
            allocator.next_number(sample_company.id, DocumentType.INVOICE, "F009")

        db_session.expire_all()
        counter = db_session.query(SeriesCounter).filter(SeriesCounter.series == "F009").one()
        assert counter.last_number == 7

    def test_peek_does_not_reserve(self, session_factory, sample_company):
        allocator = SequenceAllocator(session_factory)
        assert allocator.peek_next_number(sample_company.id, DocumentType.QUOTE, "P001") == 1

        allocator.next_number(sample_company.id, DocumentType.QUOTE, "P001")
        assert allocator.peek_next_number(sample_company.id, DocumentType.QUOTE, "P001") == 2
        assert allocator.peek_next_number(sample_company.id, DocumentType.QUOTE, "P001") == 2
        assert allocator.next_number(sample_company.id, DocumentType.QUOTE, "P001") == 2


class TestNextNumberEndpoint:

    def test_defaults_to_company_series(self, client, auth_headers):
        response = client.get("/sequences/next", params={"document_type": "invoice"}, headers=auth_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["series"] == "F001"
        assert data["next_number"] == 1
        assert data["formatted"] == "F001-00000001"

    def test_requires_tenant_header(self, client, auth_headers):
        headers = {"Authorization": auth_headers["Authorization"]}
        response = client.get("/sequences/next", params={"document_type": "quote"}, headers=headers)
        assert response.status_code == 400

    def test_rejects_foreign_company(self, client, auth_headers, other_company):
        headers = dict(auth_headers, **{"X-Company-ID": str(other_company.id)})
        response = client.get("/sequences/next", params={"document_type": "quote"}, headers=headers)
        assert response.status_code == 403
