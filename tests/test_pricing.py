# tests/test_pricing.py
from decimal import Decimal

from checkout_service.models import ProductPricing, VariantDefinition
from checkout_service.pricing import apply_bonding_curve, build_variant_key, resolve_price


def _pricing(**kwargs):
    defaults = {"product_id": "p1", "collection_id": "col-a", "price": Decimal("100"), "base_currency": "USDC"}
    defaults.update(kwargs)
    return ProductPricing(**defaults)


def test_no_modifiers_returns_base_price():
    result = resolve_price(_pricing(minimum_order_quantity=10, current_orders=3))
    assert result.unit_price == Decimal("100")
    assert result.variant_key == ""


def test_at_moq_returns_base_price():
    price = apply_bonding_curve(Decimal("100"), 10, 10, Decimal("-0.5"), Decimal("0.5"), 50)
    assert price == Decimal("100")


def test_before_moq_discount_decays_linearly():
    assert apply_bonding_curve(Decimal("100"), 0, 10, modifier_before=Decimal("-0.2")) == Decimal("80")
    assert apply_bonding_curve(Decimal("100"), 5, 10, modifier_before=Decimal("-0.2")) == Decimal("90")


def test_after_moq_ramps_towards_stock_ceiling():
    assert apply_bonding_curve(Decimal("100"), 20, 10, modifier_after=Decimal("0.5"), stock=30) == Decimal("125")
    # capped once the ceiling is passed
    assert apply_bonding_curve(Decimal("100"), 40, 10, modifier_after=Decimal("0.5"), stock=30) == Decimal("150")


def test_after_moq_with_unlimited_stock_is_flat():
    assert apply_bonding_curve(Decimal("100"), 11, 10, modifier_after=Decimal("0.3")) == Decimal("130")
    assert apply_bonding_curve(Decimal("100"), 5000, 10, modifier_after=Decimal("0.3")) == Decimal("130")


def test_stock_not_above_moq_means_no_modifier():
    assert apply_bonding_curve(Decimal("100"), 12, 10, modifier_after=Decimal("0.3"), stock=10) == Decimal("100")


def test_missing_moq_and_orders_use_defaults():
    result = resolve_price(_pricing(price_modifier_before_min=Decimal("-0.5")))
    # moq 1, orders 0: full pre-MOQ modifier
    assert result.unit_price == Decimal("50")


def test_variant_price_overrides_product_price():
    pricing = _pricing(
        variants=[VariantDefinition(id="size", name="Size")],
        variant_prices={"size:XL": Decimal("12")},
    )
    result = resolve_price(pricing, {"size": "XL"})
    assert result.unit_price == Decimal("12")
    assert result.variant_key == "size:XL"
    assert result.variant_selections == [{"name": "Size", "value": "XL"}]

    assert resolve_price(pricing, {"size": "M"}).unit_price == Decimal("100")


def test_variant_key_follows_definition_order():
    variants = [VariantDefinition(id="color"), VariantDefinition(id="size")]
    assert build_variant_key({"size": "L", "color": "red"}, variants) == "color:red,size:L"
    assert build_variant_key({"zeta": "1", "alpha": "2"}) == "alpha:2,zeta:1"
    assert build_variant_key({}) == ""


def test_unit_price_is_rounded_but_exact_price_kept():
    result = resolve_price(_pricing(price=Decimal("10"), price_modifier_before_min=Decimal("-0.3333"),
                                    minimum_order_quantity=10, current_orders=0))
    assert result.unit_price == Decimal("6.67")
    assert result.exact_price == Decimal("6.667")
    assert result.base_currency == "USDC"
