import json
from concurrent.futures import ThreadPoolExecutor

import httpx

from pdfforge.blobstore import (
    DELETE_BATCH_SIZE,
    MAX_UPLOAD_BYTES,
    RETENTION_SECONDS,
    DisabledBlobStore,
    MemoryBlobStore,
    Skipped,
    SupabaseBlobStore,
    Uploaded,
    build_blob_store,
    content_type_for,
)
from pdfforge.config import Settings


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class ExplodingStore(MemoryBlobStore):
    def put(self, key, data, content_type):
        raise ConnectionError("storage is down")


def test_oversized_upload_is_skipped():
    store = MemoryBlobStore()
    outcome = store.upload_if_eligible(b"\0" * (MAX_UPLOAD_BYTES + 1), "big.pdf")
    assert isinstance(outcome, Skipped)
    assert outcome.reason.startswith("File size exceeds 50MB (50.00MB)")
    assert store.objects == {}


def test_upload_at_threshold_is_accepted():
    store = MemoryBlobStore()
    outcome = store.upload_if_eligible(b"\0" * MAX_UPLOAD_BYTES, "edge.pdf")
    assert isinstance(outcome, Uploaded)


def test_upload_stores_under_timestamped_key():
    store = MemoryBlobStore()
    outcome = store.upload_if_eligible(b"%PDF-1.7", "my file (1).pdf")
    assert isinstance(outcome, Uploaded)
    assert outcome.size_bytes == 8
    assert outcome.key.startswith("ready/")
    assert outcome.key.endswith("_my_file__1_.pdf")
    assert outcome.url == f"memory://processed-files/{outcome.key}"
    data, content_type, _ = store.objects[outcome.key]
    assert data == b"%PDF-1.7"
    assert content_type == "application/pdf"


def test_upload_failure_becomes_skipped():
    outcome = ExplodingStore().upload_if_eligible(b"data", "x.zip")
    assert isinstance(outcome, Skipped)
    assert "storage is down" in outcome.reason


def test_disabled_store_always_skips():
    outcome = DisabledBlobStore().upload_if_eligible(b"data", "x.pdf")
    assert outcome == Skipped("Cloud storage is not configured")


def test_purge_expired_removes_only_old_objects():
    clock = Clock()
    store = MemoryBlobStore(clock=clock)
    store.put("ready/old.pdf", b"1", "application/pdf")
    clock.now += RETENTION_SECONDS + 5
    store.put("ready/new.pdf", b"2", "application/pdf")

    summary = store.purge_expired(now=clock.now)
    assert summary.total_found == 1
    assert summary.deleted_count == 1
    assert list(store.objects) == ["ready/new.pdf"]

    body = summary.as_dict()
    assert body["deletedCount"] == 1
    assert body["totalFound"] == 1
    assert body["message"] == "Cleanup completed successfully"
    assert "executionTime" in body


def test_purge_expired_deletes_in_batches():
    clock = Clock()
    store = MemoryBlobStore(clock=clock)
    for i in range(DELETE_BATCH_SIZE + 20):
        store.put(f"ready/{i}.pdf", b"x", "application/pdf")
    summary = store.purge_expired(now=clock.now + RETENTION_SECONDS + 1)
    assert summary.deleted_count == DELETE_BATCH_SIZE + 20
    assert [d["count"] for d in summary.details] == [DELETE_BATCH_SIZE, 20]


def test_content_type_for():
    assert content_type_for("a.PDF") == "application/pdf"
    assert content_type_for("a.zip") == "application/zip"
    assert content_type_for("a.docx").endswith("wordprocessingml.document")
    assert content_type_for("a.bin") == "application/octet-stream"


def make_supabase(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SupabaseBlobStore("https://proj.supabase.co", "service-key", "processed-files", client=client)


def test_supabase_upload_posts_object_and_returns_public_url():
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(200, json={"Key": "processed-files/x"})

    store = make_supabase(handler)
    outcome = store.upload_if_eligible(b"PK\x03\x04", "split-pages.zip")

    assert isinstance(outcome, Uploaded)
    assert seen["method"] == "POST"
    assert seen["path"].startswith("/storage/v1/object/processed-files/ready/")
    assert seen["headers"]["x-upsert"] == "true"
    assert seen["headers"]["content-type"] == "application/zip"
    assert seen["headers"]["authorization"] == "Bearer service-key"
    assert seen["body"] == b"PK\x03\x04"
    assert outcome.url.startswith("https://proj.supabase.co/storage/v1/object/public/processed-files/ready/")


def test_supabase_upload_error_is_skipped():
    store = make_supabase(lambda request: httpx.Response(400, json={"message": "Bucket not found"}))
    outcome = store.upload_if_eligible(b"x", "a.pdf")
    assert isinstance(outcome, Skipped)
    assert "Bucket not found" in outcome.reason


def test_supabase_signed_url():
    def handler(request: httpx.Request):
        assert request.url.path == "/storage/v1/object/sign/processed-files/shared/1_a.pdf"
        assert json.loads(request.content) == {"expiresIn": 3600}
        return httpx.Response(200, json={"signedURL": "/object/sign/processed-files/shared/1_a.pdf?token=abc"})

    store = make_supabase(handler)
    url = store.signed_url("shared/1_a.pdf", 3600)
    assert url == "https://proj.supabase.co/storage/v1/object/sign/processed-files/shared/1_a.pdf?token=abc"


def test_supabase_purge_lists_folders_and_deletes_expired():
    deleted = []

    def handler(request: httpx.Request):
        if request.url.path.startswith("/storage/v1/object/list/"):
            prefix = json.loads(request.content)["prefix"]
            if prefix == "":
                return httpx.Response(200, json=[{"name": "ready", "id": None}, {"name": "stray.pdf", "id": "1"}])
            return httpx.Response(200, json=[
                {"name": "1_old.pdf", "id": "a", "created_at": "2023-01-01T00:00:00Z"},
                {"name": "2_new.pdf", "id": "b", "created_at": "2023-01-01T02:00:00Z"},
            ])
        if request.method == "DELETE":
            deleted.extend(json.loads(request.content)["prefixes"])
            return httpx.Response(200, json=[])
        return httpx.Response(404)

    store = make_supabase(handler)
    # 2023-01-01T01:30:00Z
    summary = store.purge_expired(now=1672536600.0)
    assert deleted == ["ready/1_old.pdf"]
    assert summary.total_found == 1
    assert summary.deleted_count == 1


def test_build_blob_store_modes():
    assert build_blob_store(Settings(blob_store="none")).name == "none"
    assert build_blob_store(Settings(blob_store="memory")).name == "memory"
    assert build_blob_store(Settings(blob_store="auto")).name == "none"
    configured = Settings(blob_store="auto", supabase_url="https://x.supabase.co", supabase_key="k")
    assert build_blob_store(configured).name == "supabase"


def test_memory_store_listing_while_writing():
    store = MemoryBlobStore(clock=lambda: 0.0)

    def write(n):
        for i in range(500):
            store.put(f"ready/{n}-{i}.pdf", b"x", "application/pdf")

    def sweep():
        for _ in range(50):
            store.purge_expired(now=RETENTION_SECONDS + 1)

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [pool.submit(write, n) for n in range(3)] + [pool.submit(sweep)]
        for f in futures:
            f.result()

    store.purge_expired(now=RETENTION_SECONDS + 1)
    assert store.objects == {}
