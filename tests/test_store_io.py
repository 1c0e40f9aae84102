import json
from datetime import datetime

import pytest

from semfirewall.scanner import Scanner, Signature
from semfirewall.signature_store import SignatureNotFoundError, SignatureStore
from semfirewall.store_io import export_to_json, migrate_from_json

LEGACY_JSON = """{
    "version": "1.0",
    "description": "Legacy database",
    "signatures": [
        {
            "id": "LEGACY-001",
            "name": "Legacy_Sig_1",
            "topology_hash": "legacy_hash_1",
            "entropy_score": 4.5,
            "severity": "HIGH"
        },
        {
            "id": "LEGACY-002",
            "name": "Legacy_Sig_2",
            "topology_hash": "legacy_hash_2",
            "entropy_score": 5.5,
            "severity": "CRITICAL"
        }
    ]
}"""


@pytest.fixture
def store(tmp_path):
    with SignatureStore(tmp_path / "store_db") as opened:
        yield opened


def test_migrate_from_json(tmp_path, store):
    json_path = tmp_path / "legacy.json"
    json_path.write_text(LEGACY_JSON, encoding="utf-8")

    count = migrate_from_json(store, json_path)
    assert count == 2

    sig = store.get_signature("LEGACY-001")
    assert sig.name == "Legacy_Sig_1"
    assert sig.entropy_score == 4.5

    by_topology = store.get_signature_by_topology("legacy_hash_2")
    assert by_topology.id == "LEGACY-002"
    assert by_topology.severity == "CRITICAL"


def test_migrate_empty_signatures_array(tmp_path, store):
    json_path = tmp_path / "empty.json"
    json_path.write_text('{"version": "1.0", "signatures": []}', encoding="utf-8")
    assert migrate_from_json(store, json_path) == 0
    assert store.count_signatures() == 0


def test_migrate_missing_signatures_key(tmp_path, store):
    json_path = tmp_path / "nosigs.json"
    json_path.write_text('{"version": "1.0"}', encoding="utf-8")
    with pytest.raises(ValueError, match="signatures"):
        migrate_from_json(store, json_path)


def test_migrate_invalid_json(tmp_path, store):
    json_path = tmp_path / "broken.json"
    json_path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        migrate_from_json(store, json_path)


def test_migrate_top_level_not_object(tmp_path, store):
    json_path = tmp_path / "array.json"
    json_path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError):
        migrate_from_json(store, json_path)


def test_migrate_signatures_not_array(tmp_path, store):
    json_path = tmp_path / "obj.json"
    json_path.write_text('{"signatures": {"id": "X"}}', encoding="utf-8")
    with pytest.raises(ValueError):
        migrate_from_json(store, json_path)


def test_migrate_bad_signature_entry(tmp_path, store):
    json_path = tmp_path / "bad.json"
    json_path.write_text('{"signatures": ["oops"]}', encoding="utf-8")
    with pytest.raises(ValueError, match="decode signature"):
        migrate_from_json(store, json_path)


def test_migrate_missing_file(tmp_path, store):
    with pytest.raises(FileNotFoundError):
        migrate_from_json(store, tmp_path / "absent.json")


def test_migrate_more_than_one_batch(tmp_path, store):
    entries = [
        {"id": f"MANY-{n:05d}", "name": "Many", "topology_hash": f"h{n}", "entropy_score": 1.0}
        for n in range(1005)
    ]
    json_path = tmp_path / "many.json"
    json_path.write_text(json.dumps({"signatures": entries}), encoding="utf-8")

    assert migrate_from_json(store, json_path) == 1005
    assert store.count_signatures() == 1005
    assert store.get_signature("MANY-01004").topology_hash == "h1004"


def test_export_to_json_after_reopen(tmp_path):
    db_path = tmp_path / "store_db"
    with SignatureStore(db_path) as first:
        first.add_signatures(
            [
                Signature(id="EXPORT-001", name="Sig1", topology_hash="h1",
                          entropy_score=4.0, severity="LOW"),
                Signature(id="EXPORT-002", name="Sig2", topology_hash="h2",
                          entropy_score=5.0, severity="HIGH"),
            ]
        )

    json_path = tmp_path / "export.json"
    with SignatureStore(db_path) as reopened:
        export_to_json(reopened, json_path)

    scanner = Scanner()
    scanner.load_database(json_path)
    assert len(scanner.database.signatures) == 2
    assert {sig.id for sig in scanner.database.signatures} == {"EXPORT-001", "EXPORT-002"}


def test_export_document_layout(tmp_path, store):
    store.add_signature(Signature(id="DOC-001", name="Doc", topology_hash="dh", entropy_score=2.5))
    json_path = tmp_path / "doc.json"
    export_to_json(store, json_path)

    document = json.loads(json_path.read_text(encoding="utf-8"))
    assert document["version"] == "2.0"
    assert datetime.fromisoformat(document["generated_at"]).tzinfo is not None
    assert [entry["id"] for entry in document["signatures"]] == ["DOC-001"]
    assert document["signatures"][0]["entropy_score"] == 2.5


def test_export_empty_store(tmp_path, store):
    json_path = tmp_path / "empty_export.json"
    export_to_json(store, json_path)
    document = json.loads(json_path.read_text(encoding="utf-8"))
    assert document["signatures"] == []


def test_export_then_migrate_round_trip(tmp_path, store):
    original = Signature(
        id="RT-001", name="RoundTrip", topology_hash="rt_hash",
        fuzzy_hash="B2L1BR1", entropy_score=3.25, node_count=7, loop_depth=1,
    )
    store.add_signature(original)
    json_path = tmp_path / "rt.json"
    export_to_json(store, json_path)

    with SignatureStore(tmp_path / "other_db") as other:
        assert migrate_from_json(other, json_path) == 1
        assert other.get_signature("RT-001") == original
        assert other.stats().fuzzy_index_count == 1
        with pytest.raises(SignatureNotFoundError):
            other.get_signature("RT-999")