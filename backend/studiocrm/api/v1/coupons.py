from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from studiocrm.core.dependencies import get_coupon_service
from studiocrm.db.session import get_session
from studiocrm.schemas.coupons import (
    AppliedCouponRead,
    CouponRefreshResponse,
    CouponValidateRequest,
    CouponValidateResponse,
)
from studiocrm.services import coupons as coupons_service

router = APIRouter(prefix="/coupons", tags=["coupons"])


def _cart_items(payload: CouponValidateRequest) -> list[coupons_service.CartItem] | None:
    if not payload.items:
        return None
    return [
        coupons_service.CartItem(
            price=item.price,
            quantity=item.quantity,
            sku=item.sku or item.product_slug,
            name=item.name,
        )
        for item in payload.items
    ]


@router.post("/validate", response_model=CouponValidateResponse)
async def validate_coupon(
    payload: CouponValidateRequest,
    session: AsyncSession = Depends(get_session),
    service: coupons_service.CouponService = Depends(get_coupon_service),
) -> CouponValidateResponse:
    result = await service.validate(
        payload.code,
        order_amount=payload.order_amount,
        items=_cart_items(payload),
        persisted=coupons_service.persisted_loader(session),
    )
    applied = None
    if result.coupon is not None:
        applied = AppliedCouponRead(
            code=result.coupon.code,
            discount_type=result.coupon.discount_type,
            discount_value=result.coupon.discount_value,
            discount_amount=result.coupon.discount_amount,
        )
    return CouponValidateResponse(valid=result.valid, coupon=applied, error=result.error)


@router.post("/refresh", response_model=CouponRefreshResponse)
def refresh_coupons(
    service: coupons_service.CouponService = Depends(get_coupon_service),
) -> CouponRefreshResponse:
    return CouponRefreshResponse(count=service.force_refresh())
