"""Tenant context and session token claims."""
