from studiocrm.db.base import Base  # noqa: F401
from studiocrm.models.coupon import DiscountCoupon, DiscountType  # noqa: F401
from studiocrm.models.photo_session import PhotographySession  # noqa: F401

__all__ = [
    "Base",
    "DiscountCoupon",
    "DiscountType",
    "PhotographySession",
]
