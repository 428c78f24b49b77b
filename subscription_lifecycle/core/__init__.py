"""
Core modules for the subscription lifecycle processor.

This package contains the recommendation cache and gateway, the plan
change ledger, the payment event state machine and the webhook ingress.
"""
