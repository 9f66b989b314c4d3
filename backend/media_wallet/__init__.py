"""
Media Wallet Module
Token ledger and media subscription engine

This module provides:
- Token balances with atomic credits and debits
- PayPal token purchases and tips, applied exactly once per order
- Peer token trades
- Subscription plan changes (create, upgrade, deferred downgrade)
- Lazy reconciliation of expiry and scheduled downgrades on status reads
- Best-effort provisioning of media server and request quota entitlements

Collections used:
- users: token_balance and linked service accounts
- subscriptions: one record per billing interval, at most one active per user
- token_purchases / tips: payment audit, keyed by PayPal order id
- trades, redemptions, subscription_history: transfer and transition logs
"""

__version__ = "1.0.0"
