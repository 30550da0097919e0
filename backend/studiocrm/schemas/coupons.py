from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from studiocrm.services.coupons import DiscountKind


class CouponCartItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sku: str | None = Field(default=None, max_length=120)
    product_slug: str | None = Field(default=None, alias="productSlug", max_length=160)
    name: str | None = Field(default=None, max_length=200)
    price: Decimal = Field(ge=0)
    quantity: int = Field(default=1, ge=1)


class CouponValidateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(default="", max_length=64)
    order_amount: Decimal | None = Field(default=None, alias="orderAmount", ge=0)
    items: list[CouponCartItem] | None = None


class AppliedCouponRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    discount_type: DiscountKind = Field(serialization_alias="discountType")
    discount_value: Decimal = Field(serialization_alias="discountValue")
    discount_amount: Decimal = Field(serialization_alias="discountAmount")


class CouponValidateResponse(BaseModel):
    valid: bool
    coupon: AppliedCouponRead | None = None
    error: str | None = None


class CouponRefreshResponse(BaseModel):
    count: int
