"""
Hero-Points ledger and monetization settlement.

Append-only HP ledger with idempotent crediting/debiting, per-reason rate
limits, verifiers for ad rewards, store receipts and payment-processor
webhooks, and the monthly charity settlement job.
"""

__version__ = "0.1.0"
