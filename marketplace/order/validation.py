"""
Order Service — 入力検証

注文リクエストの明細と配送先住所を検証する。
pydantic の検証エラーは呼び出し側で扱いやすいよう ValidationError に包む。
"""

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationError

MAX_QUANTITY_PER_ITEM = 1000


class CartSelection(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0, le=MAX_QUANTITY_PER_ITEM)


class ShippingAddress(BaseModel):
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    country: str = Field(min_length=2)
    state: str | None = None
    full_name: str | None = None
    phone: str | None = None

    @field_validator("country")
    @classmethod
    def _upper_country(cls, value: str) -> str:
        return value.upper()


def _describe(error: pydantic.ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(parts)


def validate_order_items(items: Any) -> list[CartSelection]:
    """空でない明細リストか、各明細が正しいか、商品IDに重複がないかを確認する。"""
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationError("Order items are required")

    selections: list[CartSelection] = []
    seen: set[str] = set()
    for raw in items:
        if isinstance(raw, CartSelection):
            selection = raw
        elif isinstance(raw, Mapping):
            try:
                selection = CartSelection.model_validate(dict(raw))
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid order item: {_describe(e)}") from e
        else:
            raise ValidationError("Invalid order item format")

        if selection.product_id in seen:
            raise ValidationError(f"Duplicate product {selection.product_id} in order items")
        seen.add(selection.product_id)
        selections.append(selection)
    return selections


def validate_shipping_address(address: Any) -> ShippingAddress:
    if isinstance(address, ShippingAddress):
        return address
    if not isinstance(address, Mapping) or not address:
        raise ValidationError("Shipping address is required")
    try:
        return ShippingAddress.model_validate(dict(address))
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid shipping address: {_describe(e)}") from e


def validate_discount(amount: Any) -> Decimal:
    if amount is None:
        return Decimal("0.00")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid discount amount {amount!r}") from e
    if not value.is_finite() or value < 0:
        raise ValidationError("Discount amount must be a non-negative number")
    return value
