"""
models.py — Data Models for Batch Checkout

This module defines the data structures exchanged with the storefront and the
read-only snapshots fetched from the backend. It uses Pydantic models to ensure
type safety and automatic validation of incoming data.

Models:
    - CartItemRequest / BatchCheckoutRequest: the inbound cart payload.
    - ProductPricing: pricing snapshot of one product.
    - CouponRule / CouponRuleGroup / CouponDefinition: coupon configuration.
    - TokenInfo: on-chain token metadata.
    - CouponValidationRequest: payload of the stand-alone coupon check.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentMethod(str, Enum):
    DEFAULT = "default"
    SPL_TOKENS = "spl-tokens"
    STRIPE = "stripe"
    CROSS_CHAIN = "cross-chain"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["PaymentMethod"]:
        """Returns the matching method, or None for unknown/other methods."""
        try:
            return cls(value)
        except ValueError:
            return None


class VariantDefinition(BaseModel):
    id: str
    name: str = ""


class ProductRef(BaseModel):
    """
    Product as sent by the storefront.

    Only `id` and `collectionId` are trusted; prices are always re-read from
    the catalog.
    """
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    collectionId: Optional[str] = None
    variants: List[VariantDefinition] = Field(default_factory=list)


class CartItemRequest(BaseModel):
    """
    Represents a single line of the cart.

    Attributes:
        product (ProductRef): Product reference.
        selectedOptions (dict): Variant id → selected value.
        quantity (int): Requested quantity. Missing or invalid values are coerced to 1.
        customizationData (dict, optional): Opaque customization payload.
    """
    product: ProductRef
    selectedOptions: Dict[str, str] = Field(default_factory=dict)
    quantity: int = 1
    customizationData: Optional[Dict[str, Any]] = None

    @field_validator("quantity", mode="before")
    @classmethod
    def coerce_quantity(cls, value):
        try:
            quantity = int(value)
        except (TypeError, ValueError):
            return 1
        return max(1, quantity)

    @field_validator("selectedOptions", mode="before")
    @classmethod
    def drop_empty_options(cls, value):
        if not value:
            return {}
        return {str(k): str(v) for k, v in value.items() if k and v not in (None, "")}


class PaymentMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    paymentMethod: str = "default"
    couponCode: Optional[str] = None
    defaultToken: Optional[str] = None
    tokenSymbol: Optional[str] = None
    tokenDecimals: Optional[int] = None


class BatchCheckoutRequest(BaseModel):
    """
    Represents the complete checkout request sent by the storefront.

    Attributes:
        items (List[CartItemRequest]): Cart lines. An empty list is rejected by the workflow.
        shippingInfo (dict): Opaque shipping payload passed to the order store.
        walletAddress (str, optional): Buyer wallet; "anonymous" is used when absent.
        paymentMetadata (PaymentMetadata): Payment method, coupon and token hints.
    """
    items: List[CartItemRequest] = Field(default_factory=list)
    shippingInfo: Dict[str, Any] = Field(default_factory=dict)
    walletAddress: Optional[str] = None
    paymentMetadata: PaymentMetadata = Field(default_factory=PaymentMetadata)


class ProductPricing(BaseModel):
    """Read-only pricing snapshot of a product, fetched once per cart item."""
    product_id: str
    collection_id: Optional[str] = None
    name: str = ""
    price: Decimal
    base_currency: str = "SOL"
    minimum_order_quantity: Optional[int] = None
    current_orders: Optional[int] = None
    price_modifier_before_min: Optional[Decimal] = None
    price_modifier_after_min: Optional[Decimal] = None
    stock: Optional[int] = None
    variants: List[VariantDefinition] = Field(default_factory=list)
    variant_prices: Dict[str, Decimal] = Field(default_factory=dict)

    @field_validator("variant_prices", "variants", mode="before")
    @classmethod
    def none_to_empty(cls, value, info):
        if value is None:
            return {} if info.field_name == "variant_prices" else []
        return value


class RuleKind(str, Enum):
    TOKEN = "token"
    WHITELIST = "whitelist"


class CouponRule(BaseModel):
    type: str
    value: str = ""
    quantity: Optional[Decimal] = None


class CouponRuleGroup(BaseModel):
    operator: str = "AND"
    rules: List[CouponRule] = Field(default_factory=list)


class DiscountType(str, Enum):
    FIXED = "fixed_sol"
    PERCENTAGE = "percentage"


class CouponDefinition(BaseModel):
    """Active coupon as stored in the backend."""
    id: Optional[str] = None
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    collection_ids: List[str] = Field(default_factory=list)
    eligibility_groups: List[CouponRuleGroup] = Field(default_factory=list)

    @field_validator("collection_ids", "eligibility_groups", mode="before")
    @classmethod
    def none_to_list(cls, value):
        return value or []


class TokenInfo(BaseModel):
    decimals: int
    symbol: Optional[str] = None
    name: Optional[str] = None


class CouponValidationRequest(BaseModel):
    code: str
    walletAddress: str
    productCollectionIds: List[str] = Field(default_factory=list)
