from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import structlog
from django.db.models import Q
from django.utils import timezone

from .models import PromoCode

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Quote:
    nights: int
    nightly_rate_cents: int
    room_price_cents: int
    discount_cents: int
    total_cents: int
    promo_code: str = ""

    def as_dict(self):
        data = asdict(self)
        data["total"] = self.total_cents / 100.0
        return data


def _valid_promos(today):
    return PromoCode.objects.filter(
        Q(valid_from__isnull=True) | Q(valid_from__lte=today),
        Q(valid_to__isnull=True) | Q(valid_to__gte=today),
        is_active=True,
    )


def _promo_applies(promo, room_type, nights, room_price_cents):
    if promo.max_uses is not None and promo.used_count >= promo.max_uses:
        return False
    if nights < promo.min_nights:
        return False
    if room_price_cents < promo.min_amount_cents:
        return False
    restricted = list(promo.applicable_room_types.values_list("pk", flat=True))
    return not restricted or room_type.pk in restricted


def calculate_discount(promo, amount_cents):
    if promo.discount_type == PromoCode.DiscountType.PERCENTAGE:
        discount = (Decimal(amount_cents) * promo.discount_value / 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return min(int(discount), amount_cents)
    return min(promo.discount_value, amount_cents)


def resolve_promo(code, room_type, nights, room_price_cents, today=None) -> Optional[PromoCode]:
    """Return the usable promo for ``code`` or None; a bad code never fails a quote."""
    if not code:
        return None
    today = today or timezone.localdate()
    promo = _valid_promos(today).filter(code=code.strip().upper()).first()
    if promo is None or not _promo_applies(promo, room_type, nights, room_price_cents):
        logger.info("promo.ignored", code=code, room_type=room_type.pk)
        return None
    return promo


def quote(room_type, check_in, check_out, promo_code=None, today=None) -> Quote:
    nights = (check_out - check_in).days
    room_price = room_type.price_cents * nights
    promo = resolve_promo(promo_code, room_type, nights, room_price, today=today)
    discount = calculate_discount(promo, room_price) if promo else 0
    return Quote(
        nights=nights,
        nightly_rate_cents=room_type.price_cents,
        room_price_cents=room_price,
        discount_cents=discount,
        total_cents=max(0, room_price - discount),
        promo_code=promo.code if promo else "",
    )


def default_promo(today=None):
    """The promo code the booking form pre-fills, if one is currently usable."""
    today = today or timezone.localdate()
    for promo in _valid_promos(today).filter(is_default=True).order_by("pk"):
        if promo.max_uses is None or promo.used_count < promo.max_uses:
            return promo
    return None
