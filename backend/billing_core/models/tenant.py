"""
Tenant model.

Tenant lifecycle is owned elsewhere; the billing core only needs to know
whether a tenant id referenced by a provider payload exists.
"""

import enum

from sqlalchemy import Column, String

from billing_core.db_base import Base
from billing_core.models.base import TimestampMixin, generate_uuid


class TenantStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DEACTIVATED = "deactivated"


class Tenant(Base, TimestampMixin):
    __tablename__ = "tenants"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key - this IS the tenant_id used across all models"
    )

    name = Column(String(255), nullable=False)

    status = Column(
        String(20),
        nullable=False,
        default=TenantStatus.ACTIVE.value,
    )
