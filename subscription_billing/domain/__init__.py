"""
Domain Layer - Pure Business Logic

This layer contains:
- Value objects (Money, payment methods, billing periods)
- Aggregates (Subscription owning its Payment history)
- Domain events recorded by the aggregate
- Domain services (payment aggregation, renewal decisions)

Key principle: ZERO dependencies on infrastructure.
"""
