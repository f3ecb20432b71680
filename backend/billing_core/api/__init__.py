"""HTTP surface for webhooks and entitlement reads."""
