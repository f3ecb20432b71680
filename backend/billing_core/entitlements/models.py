"""
Entitlement value objects.

Provides:
- FeatureSource: where a resolved entitlement value came from
- EntitlementItem: one resolved key/value with provenance
- ResolvedEntitlements: the full snapshot returned by EntitlementComputer
"""

from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional
import json


class FeatureSource(str, Enum):
    """Where an entitlement value originated."""
    PLAN = "PLAN"
    OVERRIDE = "OVERRIDE"


@dataclass(frozen=True)
class EntitlementItem:
    key: str
    value: str
    source: str  # FeatureSource value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ResolvedEntitlements:
    """
    Complete resolved entitlement snapshot for a tenant.

    Immutable: safe to cache, serialise and return from APIs.
    """
    tenant_id: str
    plan_code: str
    status: str
    seats_quantity: Optional[int]
    active_seats: int
    entitlement_version: int
    items: List[EntitlementItem]

    def get(self, key: str) -> Optional[EntitlementItem]:
        for item in self.items:
            if item.key == key:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "planCode": self.plan_code,
            "status": self.status,
            "seatsQuantity": self.seats_quantity,
            "activeSeats": self.active_seats,
            "entitlementVersion": self.entitlement_version,
            "items": [item.to_dict() for item in self.items],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedEntitlements":
        return cls(
            tenant_id=data["tenantId"],
            plan_code=data["planCode"],
            status=data["status"],
            seats_quantity=data.get("seatsQuantity"),
            active_seats=data["activeSeats"],
            entitlement_version=data["entitlementVersion"],
            items=[EntitlementItem(**item) for item in data.get("items", [])],
        )

    @classmethod
    def from_json(cls, raw: str) -> "ResolvedEntitlements":
        return cls.from_dict(json.loads(raw))
