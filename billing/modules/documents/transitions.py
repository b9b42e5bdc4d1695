"""
Tablas de transición de estados de facturas y proformas.

Cualquier cambio de estado pasa por ``ensure_transition``; una transición
que no figura en la tabla se rechaza con StateError.
"""
from typing import Dict, FrozenSet
import enum

from billing.common.exceptions import StateError
from billing.modules.documents.models import InvoiceStatus, QuoteStatus


INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.ISSUED: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}

QUOTE_TRANSITIONS: Dict[QuoteStatus, FrozenSet[QuoteStatus]] = {
    QuoteStatus.PENDING: frozenset({
        QuoteStatus.APPROVED, QuoteStatus.REJECTED, QuoteStatus.EXPIRED, QuoteStatus.INVOICED
    }),
    QuoteStatus.APPROVED: frozenset({QuoteStatus.PENDING, QuoteStatus.INVOICED}),
    QuoteStatus.REJECTED: frozenset({QuoteStatus.PENDING}),
    QuoteStatus.EXPIRED: frozenset(),
    QuoteStatus.INVOICED: frozenset(),
}

# Estados en los que se permite reemplazar líneas y datos
INVOICE_EDITABLE = frozenset({InvoiceStatus.ISSUED})
QUOTE_EDITABLE = frozenset({QuoteStatus.PENDING, QuoteStatus.APPROVED, QuoteStatus.REJECTED})


def can_transition(table: Dict[enum.Enum, FrozenSet[enum.Enum]], current: enum.Enum, target: enum.Enum) -> bool:
    return target in table.get(current, frozenset())


def ensure_transition(table: Dict[enum.Enum, FrozenSet[enum.Enum]], current: enum.Enum,
                      target: enum.Enum, label: str) -> None:
    if not can_transition(table, current, target):
        raise StateError(
            f"No se puede pasar {label} de '{current.value}' a '{target.value}'",
            current_state=current
        )
