"""
Tests for the snapshot store and the registration identity cache.
"""
from datetime import timedelta

from specvault.database import transaction
from specvault.services.unlock import IdentityCache, SnapshotStore, derive_engine_code

from conftest import identity_document, spec_document


class TestSnapshotStore:

    def test_most_recent_by_creation_time(self, session_factory, store, clock):
        store.snapshot("AB12CDE", fingerprint="a" * 64)
        clock.advance(hours=1)
        newer = store.snapshot("AB12CDE", fingerprint="b" * 64)
        store.snapshot("XY99ZZZ", fingerprint="c" * 64)

        with transaction(session_factory) as db:
            latest = SnapshotStore(db, clock=clock).most_recent("AB12CDE")
            assert latest.id == newer
            assert latest.fingerprint == "b" * 64

    def test_none_for_unknown_registration(self, session_factory):
        with transaction(session_factory) as db:
            assert SnapshotStore(db).most_recent("AB12CDE") is None

    def test_create_assigns_id_and_clock_time(self, session_factory, clock):
        with transaction(session_factory) as db:
            snapshot = SnapshotStore(db, clock=clock).create(
                registration="AB12CDE",
                spec_document=spec_document(),
                fingerprint="f" * 64,
                engine_code="B47D20A",
            )
            assert snapshot.id is not None
            assert snapshot.created_at == clock()

    def test_engine_code(self):
        assert derive_engine_code(spec_document(engine_code="N47")) == "N47"
        assert derive_engine_code({"engine": {}}) is None
        assert derive_engine_code(None) is None


class TestIdentityCache:

    def test_store_then_lookup(self, session_factory, clock):
        with transaction(session_factory) as db:
            IdentityCache(db).store("AB12CDE", identity_document(), fetched_at=clock())

        with transaction(session_factory) as db:
            document, fetched_at = IdentityCache(db).lookup("AB12CDE")
            assert document["make"] == "BMW"
            assert fetched_at == clock()

    def test_store_replaces_document(self, session_factory, clock):
        with transaction(session_factory) as db:
            cache = IdentityCache(db)
            cache.store("AB12CDE", identity_document(), fetched_at=clock())
            cache.store("AB12CDE", identity_document(make="AUDI"), fetched_at=clock())

        with transaction(session_factory) as db:
            assert IdentityCache(db).lookup("AB12CDE")[0]["make"] == "AUDI"

    def test_lookup_missing(self, session_factory):
        with transaction(session_factory) as db:
            assert IdentityCache(db).lookup("AB12CDE") is None

    def test_freshness_window(self, session_factory, clock):
        with transaction(session_factory) as db:
            cache = IdentityCache(db, ttl_hours=24)
            assert cache.is_fresh(clock() - timedelta(hours=24), now=clock()) is True
            assert cache.is_fresh(clock() - timedelta(hours=24, seconds=1), now=clock()) is False
