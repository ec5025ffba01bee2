"""Upstream sale and refund events"""

from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReceiptType(str, Enum):
    """Kind of fiscal receipt a sale produces"""
    SALE = "sale"
    REFUND = "refund"


class SaleLineItem(BaseModel):
    """One product line of a sale"""

    name: str = Field(..., description="Product name", min_length=1)
    tax_code: Optional[str] = Field(None, description="Tax classification code (IKPU)")
    package_code: Optional[str] = Field(None, description="Package code")
    quantity: Decimal = Field(Decimal("1"), description="Quantity sold", gt=0)
    price: Decimal = Field(..., description="Unit price including VAT", ge=0)
    vat_rate: Optional[Decimal] = Field(None, description="VAT rate percentage", ge=0, le=100)
    unit: str = Field("pcs", description="Unit of measure")


class PaymentSplit(BaseModel):
    """Amounts paid per payment method"""

    model_config = ConfigDict(frozen=True)

    cash: Decimal = Field(Decimal("0"), ge=0)
    card: Decimal = Field(Decimal("0"), ge=0)
    other: Decimal = Field(Decimal("0"), ge=0)

    @property
    def total(self) -> Decimal:
        return self.cash + self.card + self.other


class SaleEvent(BaseModel):
    """A completed sale or refund that needs fiscalization"""

    sale_id: str = Field(..., description="Source sale/order reference", min_length=1)
    machine_id: str = Field(..., description="Vending machine reference")
    device_id: str = Field(..., description="Fiscal device to report through")
    type: ReceiptType = Field(ReceiptType.SALE, description="Sale or refund")
    line_items: List[SaleLineItem] = Field(default_factory=list)
    payment: PaymentSplit = Field(default_factory=PaymentSplit)
    operator_name: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict, description="Display metadata")
