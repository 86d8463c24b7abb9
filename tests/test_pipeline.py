"""
Tests for the conversion pipeline.

Tests cover:
- Successful conversion and pre-conversion snapshots
- Rollback on invalid collections and failing transforms
- YAML normalization and pass-through of unknown output
- Validation warnings that still commit
- Lock failures and lock exclusivity between concurrent runs
- Atomic visibility of the committed document
"""

import json
import threading

import yaml

from postman_openapi_sync import backup_manager
from postman_openapi_sync.backup_manager import BackupManager
from postman_openapi_sync.document_store import DocumentStore
from postman_openapi_sync.locking import CoordinationLock
from postman_openapi_sync.models import ConversionState, DocumentKind
from postman_openapi_sync.pipeline import ConversionPipeline, normalize_output, validate_output
from postman_openapi_sync.transform import PostmanToOpenAPI

from stub_transforms import FailingTransform, SlowTransform, StaticTransform


def build_pipeline(tmp_path, transform, **lock_options):
    store = DocumentStore(tmp_path / "postman_collection.json", tmp_path / "openapi.json")
    backups = BackupManager(store, tmp_path / "backups")
    options = {"max_retries": 3, "retry_timeout": 0.5, "backoff": 0.01}
    options.update(lock_options)
    lock = CoordinationLock(tmp_path / "locks", **options)
    return ConversionPipeline(store, backups, lock, transform)


def scratch_files(tmp_path):
    return [path for path in tmp_path.iterdir() if ".scratch." in path.name or ".tmp." in path.name]


class TestSuccessfulConversion:
    """Tests for the happy path."""

    def test_converts_collection(self, tmp_path, sample_collection):
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI())
        pipeline.store.write_source(json.dumps(sample_collection).encode())

        result = pipeline.run()

        assert result.success is True
        assert result.final_state == ConversionState.COMMITTING
        document = json.loads(pipeline.store.read_derived())
        assert document["openapi"] == "3.0.0"
        assert "/pets/{petId}" in document["paths"]
        assert scratch_files(tmp_path) == []

    def test_first_run_does_not_snapshot_placeholder(self, tmp_path, minimal_collection):
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI())
        pipeline.store.write_source(json.dumps(minimal_collection).encode())

        result = pipeline.run()

        assert result.snapshot is None
        assert pipeline.backups.list() == []

    def test_second_run_snapshots_previous_document(self, tmp_path, minimal_collection):
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI())
        pipeline.store.write_source(json.dumps(minimal_collection).encode())
        pipeline.run()
        previous = pipeline.store.read_derived()

        result = pipeline.run()

        assert result.snapshot is not None
        assert result.snapshot.startswith("openapi-")
        assert (pipeline.backups.backup_dir / result.snapshot).read_bytes() == previous

    def test_converts_hand_edited_values(self, tmp_path, minimal_collection):
        """Numeric query values and object response bodies are valid input."""
        minimal_collection["item"] = [
            {
                "name": "List",
                "request": {
                    "method": "GET",
                    "url": {"host": ["x", "example", "com"], "path": ["items"], "query": [{"key": "limit", "value": 10}]},
                },
                "response": [{"name": "OK", "code": 200, "body": {"a": 1}}],
            }
        ]
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI())
        pipeline.store.write_source(json.dumps(minimal_collection).encode())

        result = pipeline.run()

        assert result.success is True, result.reason
        operation = json.loads(pipeline.store.read_derived())["paths"]["/items"]["get"]
        assert operation["parameters"][0]["example"] == 10
        assert operation["responses"]["200"]["content"]["application/json"]["example"] == {"a": 1}

    def test_state_sequence(self, tmp_path, minimal_collection):
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI())
        pipeline.store.write_source(json.dumps(minimal_collection).encode())
        seen = []
        pipeline.add_listener(lambda attempt, state: seen.append(state))

        pipeline.run()

        assert seen == [
            ConversionState.LOCKING,
            ConversionState.BACKING_UP,
            ConversionState.TRANSFORMING,
            ConversionState.NORMALIZING,
            ConversionState.VALIDATING,
            ConversionState.COMMITTING,
            ConversionState.IDLE,
        ]


class TestRollback:
    """Tests for the failure branch."""

    def test_corrupt_collection_leaves_document_untouched(self, tmp_path, minimal_collection):
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI())
        pipeline.store.write_source(json.dumps(minimal_collection).encode())
        pipeline.run()
        before = pipeline.store.read_derived()

        pipeline.store.write_source(b"{ this is not json")
        result = pipeline.run()

        assert result.success is False
        assert result.error_code == "invalid_source"
        assert result.final_state == ConversionState.TRANSFORMING
        assert result.restored_from == result.snapshot
        assert pipeline.store.read_derived() == before

    def test_missing_collection_is_invalid_source(self, tmp_path):
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI())

        result = pipeline.run()

        assert result.success is False
        assert result.error_code == "invalid_source"
        assert pipeline.store.read_derived() == b"{}"

    def test_transform_failure_rolls_back(self, tmp_path, minimal_collection):
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI())
        pipeline.store.write_source(json.dumps(minimal_collection).encode())
        pipeline.run()
        before = pipeline.store.read_derived()

        pipeline.transform = FailingTransform()
        result = pipeline.run()

        assert result.success is False
        assert result.error_code == "transform_error"
        assert "converter exploded" in result.reason
        assert pipeline.store.read_derived() == before
        assert scratch_files(tmp_path) == []

    def test_failure_without_any_snapshot_keeps_current_document(self, tmp_path, minimal_collection):
        pipeline = build_pipeline(tmp_path, FailingTransform())
        pipeline.store.write_source(json.dumps(minimal_collection).encode())

        result = pipeline.run()

        assert result.success is False
        assert result.restored_from is None
        assert pipeline.store.read_derived() == b"{}"

    def test_snapshot_pruned_during_rollback_lookup(self, tmp_path, minimal_collection, monkeypatch):
        """A snapshot removed while backups are being listed is skipped, not raised."""
        pipeline = build_pipeline(tmp_path, FailingTransform())
        pipeline.store.write_source(json.dumps(minimal_collection).encode())
        pruned = pipeline.backups.backup_dir / "openapi-2024-01-01T00-00-00-000000Z.json"
        pruned.write_text('{"openapi": "3.0.0"}')

        real_parse = backup_manager.parse_timestamp

        def parse_then_prune(filename):
            (pipeline.backups.backup_dir / filename).unlink(missing_ok=True)
            return real_parse(filename)

        monkeypatch.setattr(backup_manager, "parse_timestamp", parse_then_prune)

        result = pipeline.run()

        assert result.success is False
        assert result.error_code == "transform_error"
        assert result.restored_from is None
        assert pipeline.store.read_derived() == b"{}"

    def test_empty_output_is_a_failure(self, tmp_path, minimal_collection):
        pipeline = build_pipeline(tmp_path, StaticTransform(b"   "))
        pipeline.store.write_source(json.dumps(minimal_collection).encode())

        result = pipeline.run()

        assert result.success is False
        assert result.error_code == "transform_error"


class TestNormalization:
    """Tests for YAML detection and validation warnings."""

    def test_yaml_output_is_converted_to_json(self, tmp_path, sample_collection):
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI(output_format="yaml"))
        pipeline.store.write_source(json.dumps(sample_collection).encode())

        result = pipeline.run()

        assert result.success is True
        document = json.loads(pipeline.store.read_derived())
        assert document["openapi"] == "3.0.0"
        assert document["info"]["title"] == "Pet Store"

    def test_normalize_output_detects_formats(self):
        yaml_text = yaml.safe_dump({"openapi": "3.0.0", "paths": {}}, sort_keys=False).encode()
        content, detected = normalize_output(yaml_text)
        assert detected == "yaml"
        assert json.loads(content) == {"openapi": "3.0.0", "paths": {}}

        assert normalize_output(b'{"openapi": "3.0.0"}') == (b'{"openapi": "3.0.0"}', "json")
        assert normalize_output(b"plain text") == (b"plain text", "unknown")

    def test_invalid_output_commits_with_warning(self, tmp_path, minimal_collection):
        pipeline = build_pipeline(tmp_path, StaticTransform(b"<html>not an api</html>"))
        pipeline.store.write_source(json.dumps(minimal_collection).encode())

        result = pipeline.run()

        assert result.success is True
        assert result.warnings
        assert "not valid JSON" in result.warnings[0]
        assert pipeline.store.read_derived() == b"<html>not an api</html>"

    def test_validate_output(self):
        assert validate_output(b'{"openapi": "3.0.0"}') == []
        assert validate_output(b"{}") == ["Output has no top-level 'openapi' version field"]
        assert len(validate_output(b"{broken")) == 1


class TestLocking:
    """Tests for coordination between concurrent runs."""

    def test_lock_error_aborts_without_touching_documents(self, tmp_path, minimal_collection):
        pipeline = build_pipeline(tmp_path, PostmanToOpenAPI(), max_retries=1, retry_timeout=0.05)
        pipeline.store.write_source(json.dumps(minimal_collection).encode())
        pipeline.run()
        before = pipeline.store.read_derived()
        other = CoordinationLock(tmp_path / "locks", max_retries=0, retry_timeout=0.05)

        with other.hold(pipeline.resource):
            result = pipeline.run()

        assert result.success is False
        assert result.error_code == "lock_error"
        assert result.final_state == ConversionState.LOCKING
        assert pipeline.store.read_derived() == before
        assert pipeline.backups.list() == []

    def test_concurrent_runs_never_overlap(self, tmp_path, minimal_collection):
        transform = SlowTransform(delay=0.2)
        pipeline = build_pipeline(tmp_path, transform)
        pipeline.store.write_source(json.dumps(minimal_collection).encode())

        guard = threading.Lock()
        active = {"now": 0, "max": 0}

        def track(attempt, state):
            with guard:
                if state == ConversionState.BACKING_UP:
                    active["now"] += 1
                    active["max"] = max(active["max"], active["now"])
                elif state == ConversionState.IDLE:
                    active["now"] -= 1

        pipeline.add_listener(track)
        results = []
        threads = [threading.Thread(target=lambda: results.append(pipeline.run(trigger="test"))) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert [result.success for result in results] == [True, True]
        assert active["max"] == 1
        title = json.loads(pipeline.store.read_derived())["info"]["title"]
        assert title in transform.titles

    def test_readers_never_see_partial_documents(self, tmp_path, minimal_collection):
        big = json.dumps({"openapi": "3.0.0", "paths": {f"/p{i}": {} for i in range(5000)}}).encode()
        small = json.dumps({"openapi": "3.0.0", "paths": {}}).encode()

        class Alternating:
            def __init__(self):
                self.count = 0

            def convert(self, source):
                self.count += 1
                return big if self.count % 2 else small

        pipeline = build_pipeline(tmp_path, Alternating())
        pipeline.store.write_source(json.dumps(minimal_collection).encode())
        pipeline.run()

        stop = threading.Event()
        observed = []

        def reader():
            while not stop.is_set():
                observed.append(pipeline.store.read(DocumentKind.DERIVED))

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for _ in range(10):
                assert pipeline.run().success
        finally:
            stop.set()
            thread.join()

        assert observed
        assert all(content in (big, small) for content in observed)
