"""
Tests for EntitlementVersionLedger.

Covers lazy creation, monotonic bumps, and race safety of both get-or-create
and bump under real concurrent writers.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from billing_core.entitlements.version_ledger import EntitlementVersionLedger
from billing_core.models.entitlement_version import EntitlementVersion


@pytest.fixture
def ledger():
    return EntitlementVersionLedger()


class TestGetOrCreate:
    def test_creates_row_at_version_one(self, db_session, ledger):
        row = ledger.get_or_create(db_session, "tenant-a")
        db_session.commit()

        assert row.version == 1
        assert db_session.query(EntitlementVersion).count() == 1

    def test_returns_existing_row(self, db_session, ledger):
        first = ledger.get_or_create(db_session, "tenant-a")
        db_session.commit()
        second = ledger.get_or_create(db_session, "tenant-a")

        assert second.id == first.id
        assert db_session.query(EntitlementVersion).count() == 1

    def test_rejects_empty_tenant(self, db_session, ledger):
        with pytest.raises(ValueError):
            ledger.get_or_create(db_session, "")


class TestBump:
    def test_first_bump_creates_then_increments(self, db_session, ledger):
        assert ledger.bump(db_session, "tenant-a") == 2
        db_session.commit()
        assert ledger.current_version(db_session, "tenant-a") == 2

    def test_sequential_bumps_add_exactly_n(self, db_session, ledger):
        start = ledger.current_version(db_session, "tenant-a")
        for _ in range(7):
            ledger.bump(db_session, "tenant-a")
        db_session.commit()

        assert ledger.current_version(db_session, "tenant-a") == start + 7

    def test_bump_never_decreases(self, db_session, ledger):
        seen = [ledger.current_version(db_session, "tenant-a")]
        for _ in range(5):
            seen.append(ledger.bump(db_session, "tenant-a"))
        assert seen == sorted(seen)
        assert len(set(seen)) == len(seen)

    def test_bumps_are_per_tenant(self, db_session, ledger):
        ledger.bump(db_session, "tenant-a")
        ledger.bump(db_session, "tenant-a")
        ledger.bump(db_session, "tenant-b")
        db_session.commit()

        assert ledger.current_version(db_session, "tenant-a") == 3
        assert ledger.current_version(db_session, "tenant-b") == 2

    def test_rolled_back_bump_is_discarded(self, db_session, ledger):
        ledger.get_or_create(db_session, "tenant-a")
        db_session.commit()

        ledger.bump(db_session, "tenant-a")
        db_session.rollback()

        assert ledger.current_version(db_session, "tenant-a") == 1


@pytest.mark.concurrency
class TestConcurrentAccess:
    def test_concurrent_get_or_create_yields_single_row(self, file_session_factory, ledger):
        workers = 10
        barrier = Barrier(workers)

        def first_access():
            session = file_session_factory()
            try:
                barrier.wait()
                row = ledger.get_or_create(session, "T2")
                session.commit()
                return row.id, row.version
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(lambda _: first_access(), range(workers)))

        assert len({row_id for row_id, _ in results}) == 1
        assert {version for _, version in results} == {1}

        session = file_session_factory()
        try:
            assert session.query(EntitlementVersion).filter_by(tenant_id="T2").count() == 1
        finally:
            session.close()

    def test_concurrent_bumps_lose_no_increments(self, file_session_factory, ledger):
        session = file_session_factory()
        ledger.get_or_create(session, "tenant-c")
        session.commit()
        session.close()

        workers = 8
        bumps_per_worker = 5
        barrier = Barrier(workers)

        def bump_many():
            for i in range(bumps_per_worker):
                s = file_session_factory()
                try:
                    if i == 0:
                        barrier.wait()
                    ledger.bump(s, "tenant-c")
                    s.commit()
                finally:
                    s.close()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            for future in [pool.submit(bump_many) for _ in range(workers)]:
                future.result()

        session = file_session_factory()
        try:
            assert ledger.current_version(session, "tenant-c") == 1 + workers * bumps_per_worker
        finally:
            session.close()
