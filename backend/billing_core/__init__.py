"""
Billing core: webhook inbox, transactional outbox and per-tenant
entitlement versioning.
"""

__version__ = "0.1.0"
