"""
coupons.py — Coupon Eligibility Engine

Evaluates whether a buyer wallet may use a coupon for the collections present
in a cart. A coupon holds rule groups that are AND'd together; inside a group
the rules are combined with the group's operator (AND / OR).

Rule kinds:
    - token:     buyer must hold at least `quantity` (default 1) of the mint in `value`
    - whitelist: buyer address must appear in the comma-separated list in `value`

The engine never computes a discount amount; it only returns the coupon's
discount descriptor as the basis for the orchestrator.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Protocol

from .errors import StoreError
from .logging_config import short_wallet
from .models import CouponDefinition, CouponRule, CouponRuleGroup, DiscountType, RuleKind

log = logging.getLogger(__name__)


class BalanceProvider(Protocol):
    def get_token_balance(self, owner: str, mint: str) -> Decimal:
        ...


@dataclass
class RuleResult:
    valid: bool
    error: Optional[str] = None


@dataclass
class EligibilityResult:
    valid: bool
    discount_type: Optional[DiscountType] = None
    discount_value: Decimal = Decimal(0)
    error: Optional[str] = None


def verify_whitelist(wallet_address: Optional[str], whitelist: str) -> RuleResult:
    if not wallet_address or not whitelist:
        return RuleResult(False, "Invalid input parameters")
    allowed = {address.strip() for address in whitelist.split(",") if address.strip()}
    if wallet_address in allowed:
        return RuleResult(True)
    return RuleResult(False, "Wallet not whitelisted")


def verify_token_holding(balances: BalanceProvider, wallet_address: Optional[str],
                         mint: str, minimum: Decimal) -> RuleResult:
    if not wallet_address or not mint or minimum < 0:
        return RuleResult(False, "Invalid input parameters")
    try:
        balance = balances.get_token_balance(wallet_address, mint)
    except StoreError as e:
        log.error(f"Token-Saldo für {short_wallet(wallet_address)} nicht abrufbar: {e}")
        return RuleResult(False, "Failed to verify token balance")
    if balance >= minimum:
        return RuleResult(True)
    if balance == 0:
        return RuleResult(False, f"No tokens found. You need {minimum} tokens to proceed.")
    return RuleResult(
        False,
        f"Insufficient tokens. You have {balance} but need {minimum} tokens "
        f"({minimum - balance} more)."
    )


class CouponEligibilityEngine:
    """
    Evaluates coupon rule groups against a buyer wallet.

    Args:
        balances (BalanceProvider): Token balance lookup used by token-holding rules.
    """

    def __init__(self, balances: BalanceProvider):
        self.balances = balances

    def _evaluate_rule(self, rule: CouponRule, wallet_address: Optional[str]) -> RuleResult:
        kind = rule.type.lower()
        if kind == RuleKind.TOKEN.value:
            minimum = rule.quantity if rule.quantity is not None else Decimal(1)
            return verify_token_holding(self.balances, wallet_address, rule.value, minimum)
        if kind == RuleKind.WHITELIST.value:
            return verify_whitelist(wallet_address, rule.value)
        return RuleResult(False, f"Unknown rule type: {rule.type}")

    def _evaluate_group(self, group: CouponRuleGroup, wallet_address: Optional[str]) -> RuleResult:
        results = [self._evaluate_rule(rule, wallet_address) for rule in group.rules]
        if group.operator.upper() == "OR":
            if any(r.valid for r in results):
                return RuleResult(True)
            return RuleResult(False, "None of the requirements were met")
        failed = next((r for r in results if not r.valid), None)
        if failed is None:
            return RuleResult(True)
        return RuleResult(False, failed.error)

    def evaluate(self, coupon: Optional[CouponDefinition], wallet_address: Optional[str],
                 collection_ids: Iterable[str]) -> EligibilityResult:
        """
        Checks whether `wallet_address` may use `coupon` for a cart.

        Args:
            coupon (CouponDefinition, optional): Active coupon, or None when the code is unknown.
            wallet_address (str, optional): Buyer wallet.
            collection_ids (Iterable[str]): Collection ids present in the cart.

        Returns:
            EligibilityResult: validity, the discount basis on success, or the first error reason.
        """
        if coupon is None:
            return EligibilityResult(False, error="Invalid coupon code")

        cart_collections = {c for c in collection_ids if c}
        if coupon.collection_ids and not cart_collections.intersection(coupon.collection_ids):
            return EligibilityResult(False, error="This coupon is not valid for these products")

        errors: List[str] = []
        for group in coupon.eligibility_groups:
            result = self._evaluate_group(group, wallet_address)
            if not result.valid:
                errors.append(result.error or "Requirements not met")

        if errors:
            log.info(f"Coupon {coupon.code} für {short_wallet(wallet_address)} nicht gültig: {errors[0]}")
            return EligibilityResult(False, error=errors[0])

        return EligibilityResult(True, coupon.discount_type, coupon.discount_value)
