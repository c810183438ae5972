"""Pydantic base class and field types for extraction schemas.

Schemas are plain Pydantic models deriving from ExtractedData. Numeric
fields scraped as text should use the coercing types defined here so that
"$1,299.00" becomes Decimal("1299.00") and "call for price" fails
validation instead of silently turning into None.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict

from trawl.common.deferred_validation import (
    DeferredValidation,
)

T = TypeVar("T", bound="ExtractedData")

# Currency symbols and codes tolerated around a price.
_CURRENCY_RE = re.compile(r"^[A-Z]{3}\s*|\s*[A-Z]{3}$|[$€£¥₹]")


def _coerce_price(value: Any) -> Any:
    if value is None or isinstance(value, (int, Decimal)):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if not isinstance(value, str):
        return value

    text = _CURRENCY_RE.sub("", value.strip()).replace(",", "").strip()
    if not text:
        raise ValueError(f"empty price {value!r}")
    try:
        price = Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"cannot parse price {value!r}") from e
    if not price.is_finite():
        raise ValueError(f"price {value!r} is not a finite number")
    return price


Price = Annotated[Decimal, BeforeValidator(_coerce_price)]
"""Decimal that accepts strings like "$1,299.00" or "EUR 12.50"."""


def _coerce_int(value: Any) -> Any:
    if isinstance(value, str):
        text = value.strip().replace(",", "")
        if not re.fullmatch(r"[+-]?\d+", text):
            raise ValueError(f"cannot parse integer {value!r}")
        return int(text)
    return value


LooseInt = Annotated[int, BeforeValidator(_coerce_int)]
"""Integer that accepts thousands separators ("1,024")."""


def _strip_text(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.split())
    return value


CleanText = Annotated[str, BeforeValidator(_strip_text)]
"""String with whitespace runs collapsed and ends trimmed."""


class ExtractedData(BaseModel):
    """Base class for extraction schemas with deferred validation support.

    Example:
        class Product(ExtractedData):
            name: CleanText
            price: Price

        # Normal usage (validates immediately)
        product = Product(name="Kettle", price="$19.99")

        # Deferred validation
        deferred = Product.raw(name="Kettle", price="$19.99")
        validated = deferred.confirm()
    """

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def raw(
        cls: type[T], request_url: str = "", **data: Any
    ) -> DeferredValidation[T]:
        """Create a DeferredValidation wrapper with raw, unvalidated data.

        Args:
            request_url: Optional URL for error reporting.
            **data: Raw field values (not validated).

        Returns:
            DeferredValidation wrapper that validates on confirm().
        """
        return DeferredValidation(cls, request_url, **data)
