"""
Entitlements: plan catalog, version ledger, override merge and caching.
"""
