"""
Static plan catalog.

Maps a plan code to its entitlement defaults. Values are strings so they can
be returned as-is by the entitlement API; "unlimited" marks an unbounded
limit. The catalog is immutable and safe to share across threads.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from billing_core.errors import PlanNotFoundError

UNLIMITED_VALUE = "unlimited"


@dataclass(frozen=True)
class PlanDefinition:
    code: str
    name: str
    entitlements: Mapping[str, str]
    default_seats: Optional[int] = None  # None means unlimited seats

    def to_dict(self) -> Dict[str, object]:
        return {
            "code": self.code,
            "name": self.name,
            "entitlements": dict(self.entitlements),
        }


def _plan(code: str, name: str, default_seats: Optional[int], entitlements: Dict[str, str]) -> PlanDefinition:
    return PlanDefinition(
        code=code,
        name=name,
        entitlements=MappingProxyType(dict(entitlements)),
        default_seats=default_seats,
    )


_PLANS: Mapping[str, PlanDefinition] = MappingProxyType({
    "free": _plan("free", "Free", 3, {
        "features.ai_assistant": "false",
        "limits.projects": "3",
        "limits.api_calls_per_month": "100",
    }),
    "starter": _plan("starter", "Starter", 10, {
        "features.ai_assistant": "false",
        "limits.projects": "10",
        "limits.api_calls_per_month": "1000",
    }),
    "pro": _plan("pro", "Professional", 50, {
        "features.ai_assistant": "true",
        "limits.projects": "100",
        "limits.api_calls_per_month": "10000",
    }),
    "enterprise": _plan("enterprise", "Enterprise", None, {
        "features.ai_assistant": "true",
        "limits.projects": UNLIMITED_VALUE,
        "limits.api_calls_per_month": UNLIMITED_VALUE,
    }),
})


def all_plans() -> Mapping[str, PlanDefinition]:
    """Every plan keyed by code, in catalog order."""
    return _PLANS


def find_plan(code: Optional[str]) -> Optional[PlanDefinition]:
    """Case-insensitive lookup; None for unknown or empty codes."""
    if not code:
        return None
    return _PLANS.get(code.strip().lower())


def get_plan(code: Optional[str]) -> PlanDefinition:
    """
    Look up a plan by code.

    Raises:
        PlanNotFoundError: unknown codes are never defaulted to another plan.
    """
    plan = find_plan(code)
    if plan is None:
        raise PlanNotFoundError(code)
    return plan
