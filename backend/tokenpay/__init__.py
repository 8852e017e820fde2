"""Token purchase backend: Stripe webhooks, payment ledger and token wallets"""
