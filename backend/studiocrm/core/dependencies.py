from fastapi import Request

from studiocrm.services.coupons import CouponService


def get_coupon_service(request: Request) -> CouponService:
    """The process-wide coupon service created at application start."""
    return request.app.state.coupon_service
