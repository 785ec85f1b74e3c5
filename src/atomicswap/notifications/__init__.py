"""Operator notifications."""

from atomicswap.notifications.alerts import OperatorAlerter

__all__ = ["OperatorAlerter"]
