"""Product and price catalog handlers - keep subscription_plans mirroring Stripe"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from tokenpay.core.config import settings
from tokenpay.models.subscription_plan import SubscriptionPlan
from tokenpay.schemas.payments import PaymentConfirmation, Outcome, ParsedProductDescription
from tokenpay.services.stripe_service import HandlerContext, get_value, get_id

logger = logging.getLogger(__name__)

PLAN_TYPE_SUBSCRIPTION = "subscription"
PLAN_TYPE_ONE_TIME = "one_time_purchase"

TOKEN_METADATA_KEYS = ("tokens_to_award", "tokens_awarded")

# Sentinel for "key absent" so updates can tell it apart from an invalid value
_MISSING = object()


def is_free_price(price_id: Optional[str]) -> bool:
    return bool(price_id) and price_id == settings.STRIPE_FREE_PRICE_ID


def parse_product_description(description: Optional[str], product_name: Optional[str]) -> ParsedProductDescription:
    """
    Turn a Stripe product description into ``{subtitle, features}``.

    A JSON array string becomes the feature list (subtitle falls back to the
    product name); any other non-empty string becomes the subtitle.
    """
    text = (description or "").strip()
    if not text:
        return ParsedProductDescription(subtitle=product_name, features=[])

    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return ParsedProductDescription(
                subtitle=product_name,
                features=[str(feature) for feature in parsed]
            )

    return ParsedProductDescription(subtitle=text, features=[])


def _parse_tokens(raw: Any, source: str) -> Optional[int]:
    try:
        tokens = int(str(raw).strip())
    except (TypeError, ValueError):
        logger.warning(f"Invalid tokens_to_award value {raw!r} in {source} metadata; storing null")
        return None
    if tokens < 0:
        logger.warning(f"Negative tokens_to_award value {raw!r} in {source} metadata; storing null")
        return None
    return tokens


def resolve_tokens_to_award(price_metadata: Any, product_metadata: Any = None):
    """Tokens for a plan from price metadata, then product metadata.

    Returns ``_MISSING`` when no metadata carries a token key, otherwise the
    parsed value (None when the value is not a non-negative integer).
    """
    for source, metadata in (("price", price_metadata), ("product", product_metadata)):
        for key in TOKEN_METADATA_KEYS:
            raw = get_value(metadata, key)
            if raw is not None and str(raw).strip() != "":
                return _parse_tokens(raw, source)
    return _MISSING


def _plain_metadata(metadata: Any) -> Dict[str, Any]:
    if not metadata:
        return {}
    return {str(k): v for k, v in dict(metadata).items()}


def _recurrence(price: Any) -> Tuple[str, Optional[str], Optional[int]]:
    recurring = get_value(price, "recurring")
    if recurring:
        return PLAN_TYPE_SUBSCRIPTION, get_value(recurring, "interval"), get_value(recurring, "interval_count", 1)
    return PLAN_TYPE_ONE_TIME, None, None


def _resolve_product(ctx: HandlerContext, price: Any, product_id: str):
    """Use an expanded product when the price carries one, otherwise fetch it"""
    product_ref = get_value(price, "product")
    if not isinstance(product_ref, str) and (get_value(product_ref, "name") or get_value(product_ref, "deleted")):
        return product_ref
    return ctx.gateway.Product.retrieve(product_id)


def _ignored_free_price(price_id: str, event_id: Optional[str] = None) -> PaymentConfirmation:
    message = f"{price_id} event ignored as per specific rule."
    logger.info(f"Ignoring event for free price {price_id}")
    return PaymentConfirmation(success=True, transaction_id=event_id, error=message, message=message,
                               outcome=Outcome.IGNORED)


def upsert_plan_from_price(ctx: HandlerContext, price: Any) -> PaymentConfirmation:
    """
    Create or refresh the SubscriptionPlan mirroring ``price``.

    Shared by the price.created handler, product.created and the catalog
    synchronizer. Malformed prices are rejected before any Stripe or database
    call. Concurrent upserts of the same price resolve last-write-wins.
    """
    price_id = get_value(price, "id")
    if not price_id:
        return PaymentConfirmation(success=False, error="Price ID missing from price object.",
                                   outcome=Outcome.VALIDATION_ERROR)
    if is_free_price(price_id):
        return _ignored_free_price(price_id)

    product_id = get_id(get_value(price, "product"))
    if not product_id or not str(product_id).strip():
        logger.error(f"Price {price_id} has no product reference")
        return PaymentConfirmation(success=False, error=f"Product ID missing or invalid on price object {price_id}.",
                                   outcome=Outcome.VALIDATION_ERROR)

    unit_amount = get_value(price, "unit_amount")
    if unit_amount is None:
        logger.error(f"Price {price_id} has a null unit_amount")
        return PaymentConfirmation(success=False, error=f"Price {price_id} has no unit_amount; cannot create a plan.",
                                   outcome=Outcome.VALIDATION_ERROR)

    try:
        product = _resolve_product(ctx, price, product_id)
    except Exception as e:
        logger.error(f"Failed to retrieve product {product_id} for price {price_id}: {e}")
        return PaymentConfirmation(success=False, error=f"Failed to retrieve product {product_id} from Stripe: {e}",
                                   outcome=Outcome.DOWNSTREAM_ERROR)

    if not product or get_value(product, "deleted", False):
        logger.info(f"Product {product_id} for price {price_id} is deleted; plan skipped")
        return PaymentConfirmation(success=True, message=f"Product {product_id} is deleted; plan for {price_id} skipped.",
                                   outcome=Outcome.IGNORED)

    product_name = get_value(product, "name") or product_id
    plan_type, interval, interval_count = _recurrence(price)
    tokens = resolve_tokens_to_award(get_value(price, "metadata"), get_value(product, "metadata"))
    values = {
        "stripe_product_id": product_id,
        "item_id_internal": price_id,
        "name": product_name,
        "description": parse_product_description(get_value(product, "description"), product_name).model_dump(),
        "amount": unit_amount,
        "currency": get_value(price, "currency"),
        "interval": interval,
        "interval_count": interval_count,
        "plan_type": plan_type,
        "active": bool(get_value(price, "active", False)),
        "tokens_to_award": None if tokens is _MISSING else tokens,
        "plan_metadata": _plain_metadata(get_value(price, "metadata")),
    }

    db = ctx.db
    try:
        plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.stripe_price_id == price_id).first()
        if plan is None:
            try:
                with db.begin_nested():
                    db.add(SubscriptionPlan(stripe_price_id=price_id, **values))
                    db.flush()
                logger.info(f"Created plan for price {price_id} ({product_name})")
            except IntegrityError:
                # Inserted concurrently (sync vs webhook); overwrite with our copy
                plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.stripe_price_id == price_id).first()
                if plan is None:
                    raise
        if plan is not None:
            for field, value in values.items():
                setattr(plan, field, value)
            plan.updated_at = datetime.now(timezone.utc)
            logger.info(f"Updated plan for price {price_id} ({product_name})")
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to upsert plan for price {price_id}: {e}", exc_info=True)
        return PaymentConfirmation(success=False, error=f"Failed to upsert plan for price {price_id}: {e}",
                                   outcome=Outcome.INTERNAL_ERROR)

    return PaymentConfirmation(success=True, message=f"Plan for price {price_id} upserted.")


def _event_object(event: Any):
    return get_value(get_value(event, "data"), "object", {})


def _with_event(result: PaymentConfirmation, event_id: Optional[str]) -> PaymentConfirmation:
    return result.model_copy(update={"transaction_id": event_id})


def handle_price_created(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    event_id = get_value(event, "id")
    price = _event_object(event)
    logger.info(f"Handling price.created for {get_value(price, 'id')}, event {event_id}")
    return _with_event(upsert_plan_from_price(ctx, price), event_id)


def handle_price_updated(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    """Update the mutable fields of an existing plan. A missing plan is not an error."""
    event_id = get_value(event, "id")
    price = _event_object(event)
    price_id = get_value(price, "id")
    if not price_id:
        return PaymentConfirmation(success=False, transaction_id=event_id, error="Price ID missing from price object.",
                                   outcome=Outcome.VALIDATION_ERROR)
    if is_free_price(price_id):
        return _ignored_free_price(price_id, event_id)

    plan_type, interval, interval_count = _recurrence(price)
    values = {
        SubscriptionPlan.active: bool(get_value(price, "active", False)),
        SubscriptionPlan.plan_metadata: _plain_metadata(get_value(price, "metadata")),
        SubscriptionPlan.plan_type: plan_type,
        SubscriptionPlan.interval: interval,
        SubscriptionPlan.interval_count: interval_count,
        SubscriptionPlan.updated_at: datetime.now(timezone.utc),
    }
    if get_value(price, "currency"):
        values[SubscriptionPlan.currency] = get_value(price, "currency")
    if get_value(price, "unit_amount") is not None:
        values[SubscriptionPlan.amount] = get_value(price, "unit_amount")
    tokens = resolve_tokens_to_award(get_value(price, "metadata"))
    if tokens is not _MISSING:
        values[SubscriptionPlan.tokens_to_award] = tokens

    db = ctx.db
    try:
        updated = db.query(SubscriptionPlan).filter(
            SubscriptionPlan.stripe_price_id == price_id
        ).update(values, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update plan for price {price_id}: {e}", exc_info=True)
        return PaymentConfirmation(success=False, transaction_id=event_id,
                                   error=f"Failed to update plan for price {price_id}: {e}",
                                   outcome=Outcome.INTERNAL_ERROR)

    if not updated:
        logger.info(f"No plan found for price {price_id}; nothing to update")
    return PaymentConfirmation(success=True, transaction_id=event_id,
                               message=f"Price {price_id} update processed ({updated} plan(s)).")


def handle_price_deleted(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    event_id = get_value(event, "id")
    price_id = get_value(_event_object(event), "id")
    if not price_id:
        return PaymentConfirmation(success=False, transaction_id=event_id, error="Price ID missing from price object.",
                                   outcome=Outcome.VALIDATION_ERROR)
    if is_free_price(price_id):
        return _ignored_free_price(price_id, event_id)
    return _deactivate_plans(ctx, event_id, SubscriptionPlan.stripe_price_id == price_id, f"price {price_id}")


def handle_product_deleted(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    event_id = get_value(event, "id")
    product_id = get_value(_event_object(event), "id")
    if not product_id:
        return PaymentConfirmation(success=False, transaction_id=event_id, error="Product ID missing from product object.",
                                   outcome=Outcome.VALIDATION_ERROR)
    return _deactivate_plans(
        ctx, event_id,
        and_(
            SubscriptionPlan.stripe_product_id == product_id,
            SubscriptionPlan.stripe_price_id != settings.STRIPE_FREE_PRICE_ID
        ),
        f"product {product_id}"
    )


def _deactivate_plans(ctx: HandlerContext, event_id: Optional[str], condition, label: str) -> PaymentConfirmation:
    db = ctx.db
    try:
        updated = db.query(SubscriptionPlan).filter(condition).update(
            {SubscriptionPlan.active: False, SubscriptionPlan.updated_at: datetime.now(timezone.utc)},
            synchronize_session=False
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to deactivate plans for {label}: {e}", exc_info=True)
        return PaymentConfirmation(success=False, transaction_id=event_id,
                                   error=f"Failed to deactivate plans for {label}: {e}",
                                   outcome=Outcome.INTERNAL_ERROR)
    logger.info(f"Deactivated {updated} plan(s) for deleted {label}")
    return PaymentConfirmation(success=True, transaction_id=event_id,
                               message=f"Deactivated {updated} plan(s) for {label}.")


def handle_product_updated(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    """Push the product's active flag, name and description onto all of its plans"""
    event_id = get_value(event, "id")
    product = _event_object(event)
    product_id = get_value(product, "id")
    if not product_id:
        return PaymentConfirmation(success=False, transaction_id=event_id, error="Product ID missing from product object.",
                                   outcome=Outcome.VALIDATION_ERROR)

    name = get_value(product, "name")
    values = {
        SubscriptionPlan.active: bool(get_value(product, "active", False)),
        SubscriptionPlan.updated_at: datetime.now(timezone.utc),
    }
    if name:
        values[SubscriptionPlan.name] = name
        values[SubscriptionPlan.description] = parse_product_description(
            get_value(product, "description"), name
        ).model_dump()

    db = ctx.db
    try:
        updated = db.query(SubscriptionPlan).filter(
            SubscriptionPlan.stripe_product_id == product_id,
            SubscriptionPlan.stripe_price_id != settings.STRIPE_FREE_PRICE_ID
        ).update(values, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to update plans for product {product_id}: {e}", exc_info=True)
        return PaymentConfirmation(success=False, transaction_id=event_id,
                                   error=f"Failed to update plans for product {product_id}: {e}",
                                   outcome=Outcome.INTERNAL_ERROR)

    logger.info(f"Product {product_id} update applied to {updated} plan(s)")
    return PaymentConfirmation(success=True, transaction_id=event_id,
                               message=f"Product {product_id} update applied to {updated} plan(s).")


def handle_product_created(ctx: HandlerContext, event: Any) -> PaymentConfirmation:
    """Reconcile a new product by syncing every price attached to it"""
    from tokenpay.services.catalog_sync_service import sync_catalog

    event_id = get_value(event, "id")
    product_id = get_value(_event_object(event), "id")
    if not product_id:
        return PaymentConfirmation(success=False, transaction_id=event_id, error="Product ID missing from product object.",
                                   outcome=Outcome.VALIDATION_ERROR)

    result = sync_catalog(ctx, product_id=product_id)
    if not result.success:
        return PaymentConfirmation(
            success=False, transaction_id=event_id,
            error=f"Product {product_id} sync had {result.failed_count} failure(s): {'; '.join(result.errors)}",
            outcome=Outcome.INTERNAL_ERROR
        )
    return PaymentConfirmation(success=True, transaction_id=event_id,
                               message=f"Product {product_id} synced {result.synced_count} price(s).")
