"""Pydantic schemas for payments, webhooks and catalog sync"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Outcome(str, Enum):
    """How a webhook handler resolved an event"""
    PROCESSED = "processed"
    REPLAYED = "replayed"
    IGNORED = "ignored"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    DOWNSTREAM_ERROR = "downstream_error"
    PARTIAL = "partial"
    INTERNAL_ERROR = "internal_error"


# Outcomes that should make the gateway redeliver the event
RETRYABLE_OUTCOMES = frozenset({Outcome.INTERNAL_ERROR})


class PaymentConfirmation(BaseModel):
    """Result returned by every webhook handler and by the dispatcher.

    ``error`` may be set on a successful result (replays, ignored events) so
    the wire shape stays compatible with existing consumers; ``outcome`` and
    ``message`` carry the same information without overloading the field.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=False)

    success: bool
    transaction_id: Optional[str] = None
    payment_gateway_transaction_id: Optional[str] = None
    tokens_awarded: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None
    outcome: Outcome = Outcome.PROCESSED

    @property
    def should_retry(self) -> bool:
        return self.outcome in RETRYABLE_OUTCOMES

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PurchaseIntent(BaseModel):
    """Internal request to start a purchase"""
    user_id: str
    item_id: str
    quantity: int = Field(default=1, ge=1)
    organization_id: Optional[str] = None
    wallet_id: Optional[str] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentInitiationResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    transaction_id: Optional[str] = None
    payment_gateway_transaction_id: Optional[str] = None
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    error: Optional[str] = None


class ParsedProductDescription(BaseModel):
    subtitle: Optional[str] = None
    features: List[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Summary of one catalog synchronization run"""
    success: bool
    synced_count: int = 0
    failed_count: int = 0
    ignored_count: int = 0
    pages: int = 0
    errors: List[str] = Field(default_factory=list)
