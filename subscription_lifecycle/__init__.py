"""Subscription lifecycle processor: payment webhooks, plan change ledger and price recommendations."""

__version__ = "0.1.0"
