"""
Subscription Billing - Payment Event Processing Core

Turns asynchronous, possibly duplicated, possibly out-of-order payment
provider notifications into consistent subscription and payment state:

1. Idempotent webhook ingestion (each provider event applied at most once)
2. Subscription and Payment state machines (aggregate = consistency boundary)
3. Per-subscription serialization (no lost updates under concurrent delivery)
4. Read-side payment aggregation and renewal decisions
"""

__version__ = "1.0.0"
