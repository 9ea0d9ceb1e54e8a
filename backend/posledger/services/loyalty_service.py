# Overview: Loyalty points engine driven by an explicit, versioned earn rule.

"""
Loyalty Points Engine

WHY: The earn rate changes over time. Each calculation takes a frozen
LoyaltyRuleConfig and every LoyaltyTransaction records the rule version it
used, so a refund months later deducts at the same rate the sale earned at.

RATES: points_per_currency_bps, 10000 == 1 point per currency unit (100 cents).
    points = floor(amount_cents * bps / 1_000_000)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import current_app

from ..errors import InvalidAmount, ValidationError
from ..extensions import db
from ..models import Customer, LoyaltyRule, LoyaltyTransaction
from .concurrency import run_with_retry


BPS_PER_POINT_PER_UNIT = 10000
CENTS_PER_UNIT = 100


@dataclass(frozen=True)
class LoyaltyRuleConfig:
    version: int
    points_per_currency_bps: int
    min_purchase_cents: int = 0
    rule_name: str = ""

    @classmethod
    def from_model(cls, rule: LoyaltyRule) -> "LoyaltyRuleConfig":
        return cls(
            version=rule.version,
            points_per_currency_bps=rule.points_per_currency_bps,
            min_purchase_cents=rule.min_purchase_cents,
            rule_name=rule.rule_name,
        )

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "points_per_currency_bps": self.points_per_currency_bps,
            "min_purchase_cents": self.min_purchase_cents,
            "rule_name": self.rule_name,
        }


# =============================================================================
# RULES
# =============================================================================

def get_active_rule() -> Optional[LoyaltyRuleConfig]:
    """The single active rule, or None (no points are awarded without one)."""
    rule = (
        db.session.query(LoyaltyRule)
        .filter_by(is_active=True)
        .order_by(LoyaltyRule.version.desc())
        .first()
    )
    return LoyaltyRuleConfig.from_model(rule) if rule else None


def get_rule_version(version: int) -> Optional[LoyaltyRuleConfig]:
    rule = db.session.query(LoyaltyRule).filter_by(version=version).first()
    return LoyaltyRuleConfig.from_model(rule) if rule else None


def set_active_rule(
    *,
    points_per_currency_bps: int,
    min_purchase_cents: int = 0,
    rule_name: Optional[str] = None,
) -> LoyaltyRuleConfig:
    """
    Publish a new rule version and deactivate the previous one.

    Existing rule rows are never edited.
    """
    if points_per_currency_bps < 0:
        raise ValidationError("points_per_currency_bps cannot be negative", field="points_per_currency_bps")
    if min_purchase_cents < 0:
        raise InvalidAmount("min_purchase_cents cannot be negative", field="min_purchase_cents")

    def _op() -> LoyaltyRuleConfig:
        latest = db.session.query(db.func.max(LoyaltyRule.version)).scalar() or 0
        db.session.query(LoyaltyRule).filter_by(is_active=True).update({"is_active": False})

        rule = LoyaltyRule(
            version=latest + 1,
            rule_name=rule_name or f"Rule v{latest + 1}",
            points_per_currency_bps=points_per_currency_bps,
            min_purchase_cents=min_purchase_cents,
            is_active=True,
        )
        db.session.add(rule)
        db.session.commit()
        current_app.logger.info(
            "Published loyalty rule v%d (%d bps, min %d cents)",
            rule.version, points_per_currency_bps, min_purchase_cents,
        )
        return LoyaltyRuleConfig.from_model(rule)

    return run_with_retry(_op)


# =============================================================================
# CALCULATION
# =============================================================================

def calculate_points(amount_cents: int, rule: Optional[LoyaltyRuleConfig]) -> int:
    """floor(amount * rate) when amount meets the rule's minimum purchase."""
    if rule is None or amount_cents <= 0:
        return 0
    if amount_cents < rule.min_purchase_cents:
        return 0
    return (amount_cents * rule.points_per_currency_bps) // (CENTS_PER_UNIT * BPS_PER_POINT_PER_UNIT)


def calculate_refund_points(refund_amount_cents: int, rule: Optional[LoyaltyRuleConfig]) -> int:
    """Refund deduction ignores min_purchase: a partial refund of a qualifying sale still deducts."""
    if rule is None or refund_amount_cents <= 0:
        return 0
    return (refund_amount_cents * rule.points_per_currency_bps) // (CENTS_PER_UNIT * BPS_PER_POINT_PER_UNIT)


# =============================================================================
# AWARD / DEDUCT (no commit; caller holds the customer row lock)
# =============================================================================

def award_points(
    customer: Customer,
    *,
    amount_cents: int,
    rule: Optional[LoyaltyRuleConfig],
    sale_id: Optional[int] = None,
    bnpl_transaction_id: Optional[int] = None,
    return_id: Optional[int] = None,
    reason: str = "Purchase",
) -> Optional[LoyaltyTransaction]:
    """
    Award points for a purchase amount.

    Returns the LoyaltyTransaction, or None when the amount earns nothing.
    """
    points = calculate_points(amount_cents, rule)
    if points <= 0:
        return None

    customer.loyalty_points += points
    txn = LoyaltyTransaction(
        customer_id=customer.id,
        sale_id=sale_id,
        bnpl_transaction_id=bnpl_transaction_id,
        return_id=return_id,
        rule_version=rule.version,
        points_earned=points,
        points_redeemed=0,
        reason=reason,
    )
    db.session.add(txn)
    current_app.logger.info(
        "Awarded %d loyalty points to customer %d (rule v%d)", points, customer.id, rule.version
    )
    return txn


def points_outstanding_for_sale(sale_id: int) -> tuple[int, Optional[int]]:
    """
    Points a sale has earned and not yet given back, plus the earn rule version.
    """
    earned_rows = (
        db.session.query(LoyaltyTransaction)
        .filter(
            LoyaltyTransaction.sale_id == sale_id,
            LoyaltyTransaction.points_earned > 0,
        )
        .order_by(LoyaltyTransaction.id)
        .all()
    )
    if not earned_rows:
        return 0, None

    earned = sum(row.points_earned for row in earned_rows)
    redeemed = (
        db.session.query(db.func.coalesce(db.func.sum(LoyaltyTransaction.points_redeemed), 0))
        .filter(LoyaltyTransaction.sale_id == sale_id)
        .scalar()
    )
    return max(0, earned - int(redeemed or 0)), earned_rows[0].rule_version


def deduct_points_for_refund(
    customer: Customer,
    *,
    sale_id: int,
    refund_amount_cents: int,
    return_id: Optional[int] = None,
) -> int:
    """
    Deduct points for a refund at the rate the sale earned them.

    The deduction is capped at the points the sale still has outstanding and
    at the customer's current balance, so loyalty_points never goes negative.

    Returns:
        Points deducted (0 when the sale never earned points)
    """
    outstanding, rule_version = points_outstanding_for_sale(sale_id)
    if outstanding <= 0:
        return 0

    rule = get_rule_version(rule_version) if rule_version is not None else None
    if rule is None:
        rule = get_active_rule()

    points = min(calculate_refund_points(refund_amount_cents, rule), outstanding, customer.loyalty_points)
    if points <= 0:
        return 0

    customer.loyalty_points -= points
    db.session.add(
        LoyaltyTransaction(
            customer_id=customer.id,
            sale_id=sale_id,
            return_id=return_id,
            rule_version=rule.version,
            points_earned=0,
            points_redeemed=points,
            reason="Refund",
        )
    )
    current_app.logger.info(
        "Deducted %d loyalty points from customer %d for refund on sale %d", points, customer.id, sale_id
    )
    return points


def get_loyalty_history(customer_id: int, limit: int = 100) -> list[LoyaltyTransaction]:
    return (
        db.session.query(LoyaltyTransaction)
        .filter_by(customer_id=customer_id)
        .order_by(LoyaltyTransaction.transaction_date.desc(), LoyaltyTransaction.id.desc())
        .limit(limit)
        .all()
    )
