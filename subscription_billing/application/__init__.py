"""
Application Layer - Use Cases

Orchestrates domain objects through output ports (repositories, ledgers,
locks). Provider SDK types never cross into this layer.
"""
from .commands import PaymentEventCommand
from .payment_events import HandleOutcome, HandlePaymentEventUseCase, PaymentEventProcessor

__all__ = [
    "HandleOutcome",
    "HandlePaymentEventUseCase",
    "PaymentEventCommand",
    "PaymentEventProcessor",
]
