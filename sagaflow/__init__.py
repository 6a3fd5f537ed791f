"""Coordination of distributed transactions: saga, TCC, XA, messages and workflows."""

__version__ = "0.1.0"

__all__ = ["errors", "webutil", "transaction", "processors"]