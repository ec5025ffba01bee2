"""Tax rate model and catalog"""

import re
from decimal import Decimal
from typing import Dict, Iterable, Optional, Pattern

from pydantic import BaseModel, Field


# IKPU product classification codes are 17-20 digits
IKPU_CODE_PATTERN = re.compile(r"^\d{17,20}$")


class TaxRate(BaseModel):
    """Tax rate model"""

    tax_code: str = Field(..., description="Tax classification code (IKPU)")
    tax_name: str = Field(..., description="Tax name")
    tax_percent: Decimal = Field(..., description="VAT percentage", ge=0, le=100)


class TaxCatalog:
    """
    Lookup of tax classification codes

    A catalog without entries only checks the code format; rates must then
    come from the sale line itself.
    """

    def __init__(
        self,
        rates: Iterable[TaxRate] = (),
        code_pattern: Optional[Pattern[str]] = IKPU_CODE_PATTERN,
    ) -> None:
        self._rates: Dict[str, TaxRate] = {}
        self._code_pattern = code_pattern
        for rate in rates:
            self.add(rate)

    def add(self, rate: TaxRate) -> None:
        self._rates[rate.tax_code] = rate

    def get(self, tax_code: str) -> Optional[TaxRate]:
        return self._rates.get(tax_code)

    def is_valid_code(self, tax_code: Optional[str]) -> bool:
        """Check the code is present and well formed"""
        if not tax_code:
            return False
        if self._code_pattern is None:
            return True
        return bool(self._code_pattern.match(tax_code))

    def __len__(self) -> int:
        return len(self._rates)
