"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'tokenpay_webhook_events_total',
        'Total number of Stripe webhook events handled',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('tokenpay_webhook_events_total')

try:
    webhook_verification_failures_counter = Counter(
        'tokenpay_webhook_verification_failures_total',
        'Total number of webhook deliveries rejected by signature verification'
    )
except ValueError:
    webhook_verification_failures_counter = REGISTRY._names_to_collectors.get(
        'tokenpay_webhook_verification_failures_total'
    )

# Wallet metrics
try:
    tokens_awarded_counter = Counter(
        'tokenpay_tokens_awarded_total',
        'Total number of tokens credited to wallets from payments'
    )
except ValueError:
    tokens_awarded_counter = REGISTRY._names_to_collectors.get('tokenpay_tokens_awarded_total')

# Catalog metrics
try:
    catalog_sync_prices_counter = Counter(
        'tokenpay_catalog_sync_prices_total',
        'Total number of prices processed by catalog synchronization',
        ['status']
    )
except ValueError:
    catalog_sync_prices_counter = REGISTRY._names_to_collectors.get('tokenpay_catalog_sync_prices_total')
