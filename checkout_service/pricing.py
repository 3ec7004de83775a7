"""
pricing.py — Price Resolver

Derives the unit price of a cart item in the product's base currency:
variant price table lookup followed by the bonding-curve modifier around the
product's minimum order quantity (MOQ).

Curve regimes, with `base` the variant or product price:
    orders < MOQ:  base * (1 + before + (orders / MOQ) * (0 - before))
    orders == MOQ: base
    orders > MOQ:  base * (1 + min((orders - MOQ) / (stock - MOQ), 1) * after)
                   or base * (1 + after) when stock is unlimited
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from .models import ProductPricing, VariantDefinition
from .money import round_display

log = logging.getLogger(__name__)


@dataclass
class PriceResolution:
    unit_price: Decimal
    exact_price: Decimal
    base_currency: str
    variant_key: str = ""
    variant_selections: List[Dict[str, str]] = field(default_factory=list)


def build_variant_key(selected_options: Dict[str, str],
                      variants: Optional[List[VariantDefinition]] = None) -> str:
    """
    Builds the canonical "id:value[,id:value...]" key of a variant selection.

    Selections follow the product's variant definition order; options the
    product does not define are appended in sorted id order.
    """
    if not selected_options:
        return ""
    ordered_ids = [v.id for v in variants or [] if v.id in selected_options]
    ordered_ids += sorted(k for k in selected_options if k not in ordered_ids)
    return ",".join(f"{variant_id}:{selected_options[variant_id]}" for variant_id in ordered_ids)


def describe_selections(selected_options: Dict[str, str],
                        variants: Optional[List[VariantDefinition]] = None) -> List[Dict[str, str]]:
    """Resolves (name, value) pairs for the order record."""
    names = {v.id: v.name for v in variants or [] if v.name}
    return [
        {"name": names.get(variant_id, variant_id), "value": value}
        for variant_id, value in selected_options.items()
    ]


def apply_bonding_curve(base_price: Decimal, current_orders: int, moq: int,
                        modifier_before: Optional[Decimal] = None,
                        modifier_after: Optional[Decimal] = None,
                        stock: Optional[int] = None) -> Decimal:
    """
    Applies the MOQ bonding-curve modifier to `base_price`.

    Args:
        base_price (Decimal): Variant or product price.
        current_orders (int): Cumulative order count of the product.
        moq (int): Minimum order quantity (>= 1).
        modifier_before (Decimal, optional): Fraction applied at zero orders, decaying to 0 at MOQ.
        modifier_after (Decimal, optional): Fraction reached when the stock ceiling is sold out.
        stock (int, optional): Stock ceiling; None means unlimited.

    Returns:
        Decimal: The unrounded modified price.
    """
    if current_orders < moq:
        if modifier_before is None:
            return base_price
        progress = Decimal(current_orders) / Decimal(moq)
        modifier = modifier_before + progress * (0 - modifier_before)
        return base_price * (1 + modifier)

    if current_orders == moq or modifier_after is None:
        return base_price

    if stock is None:
        return base_price * (1 + modifier_after)

    remaining = stock - moq
    if remaining <= 0:
        return base_price
    progress = min(Decimal(current_orders - moq) / Decimal(remaining), Decimal(1))
    return base_price * (1 + progress * modifier_after)


def resolve_price(pricing: ProductPricing, selected_options: Optional[Dict[str, str]] = None,
                  fallback_variants: Optional[List[VariantDefinition]] = None) -> PriceResolution:
    """
    Resolves the unit price of a product for a variant selection.

    Args:
        pricing (ProductPricing): Catalog snapshot of the product.
        selected_options (dict, optional): Variant id → value chosen by the buyer.
        fallback_variants (list, optional): Variant definitions from the request, used for
            display names when the catalog has none.

    Returns:
        PriceResolution: Rounded unit price plus the exact value it was rounded from.
    """
    selected_options = selected_options or {}
    variants = pricing.variants or fallback_variants or []

    variant_key = build_variant_key(selected_options, variants)
    base_price = pricing.price
    if variant_key and variant_key in pricing.variant_prices:
        base_price = Decimal(pricing.variant_prices[variant_key])
        log.debug(f"Variantenpreis für {pricing.product_id} ({variant_key}): {base_price}")

    moq = pricing.minimum_order_quantity or 1
    current_orders = pricing.current_orders or 0

    exact = apply_bonding_curve(
        base_price,
        current_orders,
        moq,
        modifier_before=pricing.price_modifier_before_min,
        modifier_after=pricing.price_modifier_after_min,
        stock=pricing.stock,
    )

    return PriceResolution(
        unit_price=round_display(exact, pricing.base_currency),
        exact_price=exact,
        base_currency=pricing.base_currency.upper(),
        variant_key=variant_key,
        variant_selections=describe_selections(selected_options, variants),
    )
