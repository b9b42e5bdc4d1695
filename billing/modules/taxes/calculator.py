"""
Cálculo de montos de documentos (facturas y proformas)

Función pura: sin acceso a base de datos ni efectos secundarios. El orden de
las operaciones es parte del contrato: el impuesto del documento se calcula
sobre el subtotal agregado (suma de bases ya redondeadas por línea), no como
suma de los impuestos redondeados de cada línea. Ambos caminos pueden diferir
en un céntimo.
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Union

from billing.modules.taxes.schemas import ComputedLine, DocumentTotals

CENT = Decimal('0.01')
HUNDRED = Decimal('100')

Number = Union[Decimal, int, float, str]


def round_money(value: Decimal) -> Decimal:
    """Redondeo comercial (half-up) a 2 decimales"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() evita arrastrar el error binario de los float
    return Decimal(str(value))


def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def compute_line(item: Any, tax_rate_percent: Number, position: int) -> ComputedLine:
    """
    Calcular una línea.

    Orden: bruto = cantidad * precio; neto = bruto - descuento;
    impuesto = neto * tasa / 100; total = neto + impuesto. Neto, impuesto y
    total se redondean al final, cada uno por separado.
    """
    rate = to_decimal(tax_rate_percent) / HUNDRED
    quantity = to_decimal(_field(item, 'quantity'))
    unit_price = to_decimal(_field(item, 'unit_price'))
    discount = to_decimal(_field(item, 'discount') or 0)

    line_gross = quantity * unit_price
    line_net = line_gross - discount
    line_tax = line_net * rate
    line_total = line_net + line_tax

    return ComputedLine(
        position=position,
        description=_field(item, 'description'),
        product_id=_field(item, 'product_id'),
        unit=_field(item, 'unit'),
        quantity=quantity,
        unit_price=unit_price,
        discount=discount,
        subtotal=round_money(line_net),
        tax=round_money(line_tax),
        total=round_money(line_total)
    )


def compute_document_totals(lines: Iterable[Any], tax_rate_percent: Number) -> DocumentTotals:
    """
    Calcular líneas y totales de un documento.

    Args:
        lines: objetos o diccionarios con quantity, unit_price y discount
            (monto fijo, no porcentaje). Se asume que ya fueron validados:
            cantidad y precio > 0, descuento >= 0.
        tax_rate_percent: tasa en porcentaje (18 para 18%). Puede ser 0.

    Returns:
        DocumentTotals con las líneas en el orden recibido (position 0..n-1)
    """
    rate_percent = to_decimal(tax_rate_percent)
    computed = [compute_line(item, rate_percent, index) for index, item in enumerate(lines)]

    subtotal = sum((line.subtotal for line in computed), Decimal('0.00'))
    discount = sum((line.discount for line in computed), Decimal('0.00'))
    tax = round_money(subtotal * (rate_percent / HUNDRED))
    total = round_money(subtotal + tax)

    return DocumentTotals(
        lines=computed,
        tax_rate=rate_percent,
        subtotal=round_money(subtotal),
        discount=round_money(discount),
        tax=tax,
        total=total
    )
