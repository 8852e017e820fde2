"""Catalog synchronization - replay Stripe's full price list through the plan upsert"""
import logging
from typing import Optional

from tokenpay.core.config import settings
from tokenpay.core.metrics import catalog_sync_prices_counter
from tokenpay.schemas.payments import Outcome, SyncResult
from tokenpay.services.catalog_service import upsert_plan_from_price
from tokenpay.services.stripe_service import HandlerContext, get_value

logger = logging.getLogger(__name__)


def sync_catalog(ctx: HandlerContext, product_id: Optional[str] = None, page_size: Optional[int] = None) -> SyncResult:
    """
    Page through active and inactive Stripe prices and upsert a plan for each.

    Failures are counted per price and never stop the run; the result is
    successful only when no price failed.

    Args:
        ctx: Handler context (database session and Stripe client)
        product_id: Restrict the listing to one product
        page_size: Prices per page, defaults to CATALOG_SYNC_PAGE_SIZE

    Returns:
        SyncResult with per-price counts and error messages
    """
    limit = max(1, min(page_size or settings.CATALOG_SYNC_PAGE_SIZE, 100))
    params = {"limit": limit, "expand": ["data.product"]}
    if product_id:
        params["product"] = product_id

    result = SyncResult(success=True)
    starting_after = None

    while True:
        if starting_after:
            params["starting_after"] = starting_after
        try:
            page = ctx.gateway.Price.list(**params)
        except Exception as e:
            logger.error(f"Failed to list prices from Stripe (page {result.pages + 1}): {e}")
            result.errors.append(f"Failed to list prices from Stripe: {e}")
            result.failed_count += 1
            break

        result.pages += 1
        prices = list(get_value(page, "data", []))
        for price in prices:
            price_id = get_value(price, "id")
            outcome = upsert_plan_from_price(ctx, price)
            if outcome.success and outcome.outcome == Outcome.IGNORED:
                result.ignored_count += 1
                catalog_sync_prices_counter.labels(status="ignored").inc()
            elif outcome.success:
                result.synced_count += 1
                catalog_sync_prices_counter.labels(status="synced").inc()
            else:
                result.failed_count += 1
                result.errors.append(f"{price_id}: {outcome.error}")
                catalog_sync_prices_counter.labels(status="failed").inc()

        if not prices or not get_value(page, "has_more", False):
            break
        starting_after = get_value(prices[-1], "id")

    result.success = result.failed_count == 0
    logger.info(
        f"Catalog sync finished: {result.synced_count} synced, {result.ignored_count} ignored, "
        f"{result.failed_count} failed over {result.pages} page(s)"
    )
    return result
