"""
Entitlement Version Ledger - per-tenant monotonic counter.

The version is a cache-invalidation token: session tokens carry it as the
ent_v claim and cached entitlement snapshots are keyed by it. Every writer
that changes what a tenant is entitled to goes through bump(); nothing else
writes EntitlementVersion.version.

Concurrency:
- get_or_create() inserts with ON CONFLICT DO NOTHING and re-reads, so
  concurrent first accesses converge on one row.
- bump() is a single atomic UPDATE ... SET version = version + 1, which the
  database serialises per row. There is no read-increment-write window in
  which a concurrent bump could be lost.

Neither method commits. Callers own the transaction so a bump lands
atomically with the mutation that caused it.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_core.database.upsert import insert_ignoring_conflict
from billing_core.models.base import generate_uuid, utcnow
from billing_core.models.entitlement_version import EntitlementVersion

logger = logging.getLogger(__name__)

INITIAL_VERSION = 1


class EntitlementVersionLedger:
    """Race-safe get-or-create and increment of per-tenant versions."""

    def get_or_create(self, db: Session, tenant_id: str) -> EntitlementVersion:
        """
        Return the tenant's version row, creating it at version 1 if absent.

        A concurrent creator winning the insert is not an error: the row it
        wrote is re-read and returned.
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        row = self._load(db, tenant_id)
        if row is not None:
            return row

        inserted = insert_ignoring_conflict(
            db,
            EntitlementVersion,
            {
                "id": generate_uuid(),
                "tenant_id": tenant_id,
                "version": INITIAL_VERSION,
                "updated_at": utcnow(),
            },
            index_elements=["tenant_id"],
        )
        if inserted:
            logger.info("Entitlement version initialised", extra={"tenant_id": tenant_id})

        row = self._load(db, tenant_id)
        if row is None:
            # Only reachable if the row was deleted between insert and read.
            raise RuntimeError(f"Entitlement version row vanished for tenant {tenant_id}")
        return row

    def bump(self, db: Session, tenant_id: str) -> int:
        """
        Atomically increment the tenant's version and return the new value.

        The row is created first if needed; a brand-new tenant therefore goes
        from 1 to 2 on its first bump.
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        insert_ignoring_conflict(
            db,
            EntitlementVersion,
            {
                "id": generate_uuid(),
                "tenant_id": tenant_id,
                "version": INITIAL_VERSION,
                "updated_at": utcnow(),
            },
            index_elements=["tenant_id"],
        )

        stmt = (
            update(EntitlementVersion)
            .where(EntitlementVersion.tenant_id == tenant_id)
            .values(version=EntitlementVersion.version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

        if db.get_bind().dialect.update_returning:
            new_version = db.execute(stmt.returning(EntitlementVersion.version)).scalar_one()
        else:
            db.execute(stmt)
            # The row is locked by our UPDATE until commit, so this read sees our increment.
            new_version = db.execute(
                select(EntitlementVersion.version).where(EntitlementVersion.tenant_id == tenant_id)
            ).scalar_one()

        logger.info(
            "Entitlement version bumped",
            extra={"tenant_id": tenant_id, "version": new_version},
        )
        return int(new_version)

    def current_version(self, db: Session, tenant_id: str) -> int:
        return int(self.get_or_create(db, tenant_id).version)

    def _load(self, db: Session, tenant_id: str):
        return (
            db.query(EntitlementVersion)
            .filter(EntitlementVersion.tenant_id == tenant_id)
            .populate_existing()
            .first()
        )
