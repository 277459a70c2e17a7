import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from algosend.errors import EscrowNotFoundError, StateConflictError
from algosend.store import ClaimType, EscrowRecord, InMemoryEscrowStore, JsonFileEscrowStore, RecordStatus

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def record(app_id, creator="CREATOR", created_at=T0, **extra):
    return EscrowRecord(
        app_id=app_id,
        app_address=f"APP{app_id}",
        creator=creator,
        authorized_claimer="CAPSULE",
        claim_hash=f"hash-{app_id}",
        asset_id=31566704,
        amount=25_000_000,
        created_at=created_at,
        **extra,
    )


class TestInMemoryStore:

    def test_add_and_get(self):
        store = InMemoryEscrowStore()
        store.add(record(1))
        assert store.get(1).amount == 25_000_000
        assert store.get(2) is None

    def test_duplicate_add(self):
        store = InMemoryEscrowStore()
        store.add(record(1))
        with pytest.raises(StateConflictError):
            store.add(record(1))

    def test_update(self):
        store = InMemoryEscrowStore()
        store.add(record(1))
        updated = store.update(1, status=RecordStatus.FUNDED, funded_at=T0)
        assert updated.funded
        assert store.get(1) == updated
        with pytest.raises(EscrowNotFoundError):
            store.update(9, status=RecordStatus.FUNDED)

    def test_list_by_creator_newest_first(self):
        store = InMemoryEscrowStore()
        store.add(record(1, created_at=T0))
        store.add(record(2, created_at=T0 + timedelta(hours=1)))
        store.add(record(3, creator="OTHER"))
        assert [r.app_id for r in store.list_by_creator("CREATOR")] == [2, 1]


class TestRecord:

    def test_derived_flags(self):
        r = record(1, claimed_at=T0, funded_at=T0, status=RecordStatus.CLAIMED)
        assert r.funded and r.claimed and r.resolved
        assert not r.reclaimed
        assert not r.cleaned_up

    def test_dict_round_trip(self):
        r = record(1, funded_at=T0, claim_type=ClaimType.OPTIMIZED, status=RecordStatus.CLAIMED)
        data = r.to_dict()
        assert data["status"] == "CLAIMED"
        assert data["claim_type"] == "optimized"
        assert data["created_at"] == T0.isoformat()
        assert EscrowRecord.from_dict(data) == r

    def test_public_dict_hides_claim_hash(self):
        data = record(1).to_public_dict()
        assert "claim_hash" not in data
        assert data["app_id"] == 1
        assert data["status"] == "APP_CREATED_AWAITING_FUNDING"


class TestJsonFileStore:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "escrows.json"
        store = JsonFileEscrowStore(path)
        store.add(record(1))
        store.update(1, status=RecordStatus.FUNDED, funded_at=T0)

        reloaded = JsonFileEscrowStore(path)
        assert reloaded.get(1).status is RecordStatus.FUNDED
        assert reloaded.get(1).funded_at == T0
        assert len(reloaded) == 1

    def test_missing_file_starts_empty(self, tmp_path):
        store = JsonFileEscrowStore(tmp_path / "none.json")
        assert len(store) == 0
        assert not (tmp_path / "none.json").exists()

    def test_write_leaves_no_temp_file(self, tmp_path):
        path = tmp_path / "escrows.json"
        store = JsonFileEscrowStore(path)
        store.add(record(1))
        assert [p.name for p in tmp_path.iterdir()] == ["escrows.json"]
        assert json.loads(path.read_text())["escrows"][0]["app_id"] == 1

    def test_concurrent_writes_are_all_persisted(self, tmp_path):
        path = tmp_path / "escrows.json"
        store = JsonFileEscrowStore(path)
        for app_id in range(1, 21):
            store.add(record(app_id))

        def advance(app_id):
            store.update(app_id, status=RecordStatus.FUNDED, funded_at=T0)

        threads = [threading.Thread(target=advance, args=(app_id,)) for app_id in range(1, 21)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        reloaded = JsonFileEscrowStore(path)
        assert len(reloaded) == 20
        assert all(reloaded.get(app_id).funded for app_id in range(1, 21))
