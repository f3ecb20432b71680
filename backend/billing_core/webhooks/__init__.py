"""Billing-provider webhooks: receipt, inbox, handlers and the processor."""
