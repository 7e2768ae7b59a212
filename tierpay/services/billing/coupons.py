"""Discount code lookup against Stripe promotion codes and coupons."""

import logging
from typing import Any

from tierpay.config import settings
from tierpay.errors import CommerceError
from tierpay.schemas.billing import CouponDiscount, CouponValidateResponse
from tierpay.services.payment_gateway import stripe_gateway

logger = logging.getLogger(__name__)


def parse_code_map(raw: str) -> dict[str, str]:
    """Parse ``CODE:value,CODE:value`` into an upper-cased key map."""
    result: dict[str, str] = {}
    for pair in raw.split(","):
        if ":" not in pair:
            continue
        code, value = pair.split(":", 1)
        code, value = code.strip().upper(), value.strip()
        if code and value:
            result[code] = value
    return result


def coupon_percentages() -> dict[str, float]:
    result: dict[str, float] = {}
    for code, value in parse_code_map(settings.coupon_codes).items():
        try:
            result[code] = float(value)
        except ValueError:
            logger.warning("Ignoring coupon %s with invalid percentage %r", code, value)
    return result


def promotion_code_ids() -> dict[str, str]:
    return parse_code_map(settings.promotion_code_ids)


def _coupon_of(promotion_code: dict[str, Any]) -> dict[str, Any] | str | None:
    # newer API versions nest the coupon under "promotion"
    promotion = promotion_code.get("promotion") or {}
    return promotion_code.get("coupon") or promotion.get("coupon")


def _discount_of(coupon: dict[str, Any]) -> CouponDiscount | None:
    if coupon.get("percent_off"):
        return CouponDiscount(type="percent", value=coupon["percent_off"])
    if coupon.get("amount_off"):
        return CouponDiscount(
            type="amount",
            value=coupon["amount_off"] / 100,
            currency=coupon.get("currency"),
        )
    return None


class Coupons:
    @staticmethod
    def fallback_percent(code: str | None) -> float:
        if not code:
            return 0
        return coupon_percentages().get(code.strip().upper(), 0)

    @staticmethod
    def _lookup_promotion(code: str) -> dict[str, Any] | None:
        """Find an active promotion code by known id, then by code spelling."""
        upper = code.upper()
        known_id = promotion_code_ids().get(upper)
        if known_id:
            try:
                promotion = stripe_gateway.retrieve_promotion_code(known_id)
                if promotion.get("active"):
                    return promotion
                logger.info("Promotion code %s is inactive", upper)
            except CommerceError as exc:
                logger.warning("Known promotion code lookup failed for %s: %s", upper, exc)

        for candidate in dict.fromkeys([code, code.lower(), upper]):
            try:
                promotion = stripe_gateway.find_promotion_code(candidate)
            except CommerceError as exc:
                logger.warning("Promotion code lookup failed for %r: %s", candidate, exc)
                continue
            if promotion:
                return promotion
        return None

    @classmethod
    def resolve(cls, code: str | None) -> str | None:
        """Return the Stripe coupon id for a customer-entered code, or None."""
        if not code or not code.strip():
            return None
        code = code.strip()
        promotion = cls._lookup_promotion(code)
        if promotion:
            coupon_id = _coupon_id(_coupon_of(promotion))
            if coupon_id:
                logger.info("Resolved promotion code %s -> coupon %s", code, coupon_id)
                return coupon_id

        upper = code.upper()
        percent = coupon_percentages().get(upper)
        if not percent:
            logger.info("Coupon code not recognised: %s", code)
            return None
        try:
            return stripe_gateway.retrieve_coupon(upper)["id"]
        except CommerceError:
            logger.info("Coupon %s not found in Stripe, creating it", upper)
        try:
            coupon = stripe_gateway.create_coupon(
                upper, percent, f"{percent:g}% Growth Rewards Discount"
            )
        except CommerceError as exc:
            logger.error("Failed to create coupon %s: %s", upper, exc)
            return None
        return coupon["id"]

    @classmethod
    def validate(cls, code: str) -> CouponValidateResponse:
        code = code.strip()
        upper = code.upper()
        promotion = cls._lookup_promotion(code)
        if promotion:
            coupon = _coupon_of(promotion)
            if isinstance(coupon, str):
                try:
                    coupon = stripe_gateway.retrieve_coupon(coupon)
                except CommerceError as exc:
                    logger.warning("Coupon lookup failed for %s: %s", upper, exc)
                    coupon = None
            if isinstance(coupon, dict):
                if coupon.get("valid") is False:
                    return CouponValidateResponse(
                        valid=False, error="This coupon is no longer active"
                    )
                return CouponValidateResponse(
                    valid=True, code=upper, discount=_discount_of(coupon)
                )

        percent = coupon_percentages().get(upper)
        if percent:
            return CouponValidateResponse(
                valid=True,
                code=upper,
                discount=CouponDiscount(type="percent", value=percent),
            )
        return CouponValidateResponse(valid=False, error="Invalid coupon code")


def _coupon_id(coupon: dict[str, Any] | str | None) -> str | None:
    if isinstance(coupon, str):
        return coupon
    if isinstance(coupon, dict):
        return coupon.get("id")
    return None


coupons = Coupons()
