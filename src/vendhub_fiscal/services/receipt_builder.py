"""
Receipt builder
Turns a sale or refund event into a self-contained receipt draft

Pure transformation: no I/O and no clock, so rebuilding the draft for the
same sale always yields the same content.
"""

from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from vendhub_fiscal.exceptions import MissingTaxCodeError, PaymentMismatchError, ValidationError
from vendhub_fiscal.models.money import MONEY_QUANT, ZERO, to_money
from vendhub_fiscal.models.receipt import ReceiptDraft, ReceiptLine, VatBreakdown
from vendhub_fiscal.models.sale import PaymentSplit, SaleEvent, SaleLineItem
from vendhub_fiscal.models.tax import TaxCatalog


def calculate_vat(total: Decimal, vat_rate: Decimal) -> Decimal:
    """VAT included in a gross amount: total * rate / (100 + rate)"""
    if vat_rate == 0:
        return ZERO
    return to_money(total * vat_rate / (Decimal(100) + vat_rate))


class ReceiptBuilder:
    """
    Build receipt drafts

    Example:
        >>> builder = ReceiptBuilder(TaxCatalog([TaxRate(tax_code="10202001001000000",
        ...                                              tax_name="Snacks", tax_percent=12)]))
        >>> draft = builder.build(sale)
        >>> draft.vat_total
        Decimal('1071.43')
    """

    def __init__(self, catalog: Optional[TaxCatalog] = None) -> None:
        self._catalog = catalog or TaxCatalog()

    def build(self, sale: SaleEvent) -> ReceiptDraft:
        """
        Build the draft of a sale

        Raises:
            ValidationError: If the sale has no line items
            MissingTaxCodeError: If a line has no valid tax code or VAT rate
            PaymentMismatchError: If the payment split does not cover the total
        """
        if not sale.line_items:
            raise ValidationError("Sale has no line items", field="line_items")

        lines = [
            self._build_line(line_no, item)
            for line_no, item in enumerate(sale.line_items, start=1)
        ]
        total = sum((line.total for line in lines), ZERO)
        vat_total = sum((line.vat_amount for line in lines), ZERO)
        payment = self._split_payment(sale.payment, total)

        return ReceiptDraft(
            sale_id=sale.sale_id,
            machine_id=sale.machine_id,
            device_id=sale.device_id,
            type=sale.type,
            lines=tuple(lines),
            vat_breakdown=self._breakdown(lines),
            total=total,
            vat_total=vat_total,
            payment=payment,
            operator_name=sale.operator_name,
        )

    def _build_line(self, line_no: int, item: SaleLineItem) -> ReceiptLine:
        vat_rate = self._resolve_rate(line_no, item)
        total = to_money(item.price * item.quantity)

        return ReceiptLine(
            line_no=line_no,
            name=item.name,
            tax_code=item.tax_code,
            package_code=item.package_code,
            quantity=item.quantity,
            unit=item.unit,
            price=to_money(item.price),
            vat_rate=vat_rate,
            vat_amount=calculate_vat(total, vat_rate),
            total=total,
        )

    def _resolve_rate(self, line_no: int, item: SaleLineItem) -> Decimal:
        if not self._catalog.is_valid_code(item.tax_code):
            raise MissingTaxCodeError(
                f"Line {line_no} ({item.name}) has no valid tax classification code: "
                f"{item.tax_code!r}",
                line_no=line_no,
            )

        known = self._catalog.get(item.tax_code)
        if item.vat_rate is None:
            if known is None:
                raise MissingTaxCodeError(
                    f"Line {line_no} ({item.name}) has no VAT rate for code {item.tax_code}",
                    line_no=line_no,
                )
            return known.tax_percent

        if known is not None and known.tax_percent != item.vat_rate:
            raise MissingTaxCodeError(
                f"Line {line_no} ({item.name}) VAT rate {item.vat_rate} conflicts with "
                f"rate {known.tax_percent} of code {item.tax_code}",
                line_no=line_no,
            )
        return item.vat_rate

    def _breakdown(self, lines: List[ReceiptLine]) -> Tuple[VatBreakdown, ...]:
        groups: Dict[Decimal, List[ReceiptLine]] = OrderedDict()
        for line in sorted(lines, key=lambda l: l.vat_rate):
            groups.setdefault(line.vat_rate, []).append(line)

        return tuple(
            VatBreakdown(
                vat_rate=rate,
                gross_amount=sum((l.total for l in group), ZERO),
                vat_amount=sum((l.vat_amount for l in group), ZERO),
            )
            for rate, group in groups.items()
        )

    def _split_payment(self, payment: PaymentSplit, total: Decimal) -> PaymentSplit:
        """Check the split against the total and absorb the rounding difference"""
        paid = payment.total
        if abs(paid - total) > MONEY_QUANT:
            raise PaymentMismatchError(total, paid)

        parts = {
            "cash": to_money(payment.cash),
            "card": to_money(payment.card),
            "other": to_money(payment.other),
        }
        difference = total - sum(parts.values(), ZERO)
        if difference:
            # Largest component takes the difference; ties go to cash, then card
            largest = max(parts, key=lambda name: parts[name])
            parts[largest] += difference

        return PaymentSplit(**parts)
