"""Product catalog - provider product ids mapped to entitlement semantics.

Only registered SKUs affect entitlements. Anything not listed here is ignored
by the transformer and the Stripe handlers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

TIER_BOARD_REVIEW = "board_review"
TIER_CME_ANNUAL = "cme_annual"
TIER_CME_CREDITS = "cme_credits"

GRANTED_BY_CME_LABEL = "Granted by CME Annual"
EXPIRED_LABEL = "Expired/Canceled"


@dataclass(frozen=True)
class SubscriptionProduct:
    product_id: str
    tier: str
    plan_name: str
    trial_type: str
    grants_board_review: bool = False


@dataclass(frozen=True)
class CreditProduct:
    product_id: str
    units_per_purchase: int = 1
    default_quantity: int = 1


DEFAULT_SUBSCRIPTIONS = (
    SubscriptionProduct(
        product_id="medswipe.board.review.monthly",
        tier=TIER_BOARD_REVIEW,
        plan_name="Board Review Monthly",
        trial_type=TIER_BOARD_REVIEW,
    ),
    SubscriptionProduct(
        product_id="medswipe.board.review.quarterly",
        tier=TIER_BOARD_REVIEW,
        plan_name="Board Review 3-Month",
        trial_type=TIER_BOARD_REVIEW,
    ),
    SubscriptionProduct(
        product_id="medswipe.board.review.annual",
        tier=TIER_BOARD_REVIEW,
        plan_name="Board Review Annual",
        trial_type=TIER_BOARD_REVIEW,
    ),
    SubscriptionProduct(
        product_id="medswipe.cme.annual",
        tier=TIER_CME_ANNUAL,
        plan_name="CME Annual Subscription",
        trial_type=TIER_CME_ANNUAL,
        grants_board_review=True,
    ),
)

DEFAULT_CREDITS = (
    CreditProduct(product_id="medswipe.cme.credits", units_per_purchase=1, default_quantity=1),
)


class ProductCatalog:
    """Lookup of subscription and consumable products by provider id."""

    def __init__(
        self,
        subscriptions: Iterable[SubscriptionProduct] = DEFAULT_SUBSCRIPTIONS,
        credits: Iterable[CreditProduct] = DEFAULT_CREDITS,
    ) -> None:
        self._subscriptions: Dict[str, SubscriptionProduct] = {p.product_id: p for p in subscriptions}
        self._credits: Dict[str, CreditProduct] = {p.product_id: p for p in credits}

    def subscription(self, product_id: Optional[str]) -> Optional[SubscriptionProduct]:
        if not product_id:
            return None
        return self._subscriptions.get(str(product_id))

    def credit(self, product_id: Optional[str]) -> Optional[CreditProduct]:
        if not product_id:
            return None
        return self._credits.get(str(product_id))


DEFAULT_CATALOG = ProductCatalog()


def get_catalog() -> ProductCatalog:
    """Catalog dependency."""
    return DEFAULT_CATALOG
