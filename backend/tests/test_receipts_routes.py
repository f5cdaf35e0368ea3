import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeMetering, insert_receipt
from receipt_scanner.api import dependencies
from receipt_scanner.api.main import app
from receipt_scanner.api.routes import events as events_routes
from receipt_scanner.api.routes import receipts as receipts_routes
from receipt_scanner.core.config import settings
from receipt_scanner.core.events import EXTRACT_RECEIPT_EVENT
from receipt_scanner.models.enums import ReceiptStatus


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.deleted = []

    def save_bytes(self, owner_id, file_name, data, content_type):
        file_id = f"{owner_id}/abc_{file_name}"
        self.objects[file_id] = data
        return file_id

    def generate_upload_url(self, owner_id, file_name):
        return f"{owner_id}/up_{file_name}", f"https://minio.example/put/{file_name}"

    def exists(self, file_id):
        return file_id in self.objects

    def get_url(self, file_id):
        return f"https://minio.example/{file_id}" if file_id in self.objects else None

    def owns(self, owner_id, file_id):
        return file_id.startswith(f"{owner_id}/")

    def delete(self, file_id):
        self.deleted.append(file_id)
        self.objects.pop(file_id, None)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def sent(monkeypatch):
    calls = []
    monkeypatch.setattr(receipts_routes, "send_event", lambda name, data: calls.append((name, data)))
    return calls


@pytest.fixture
def client(store, storage):
    app.dependency_overrides[dependencies.get_current_subject] = lambda: "user_1"
    app.dependency_overrides[dependencies.get_store] = lambda: store
    app.dependency_overrides[dependencies.get_storage] = lambda: storage
    app.dependency_overrides[dependencies.get_metering] = lambda: FakeMetering()
    yield TestClient(app)
    app.dependency_overrides.clear()


def upload(client, name="receipt.pdf", content=b"%PDF-1.4 test", mime="application/pdf"):
    return client.post("/receipts", files={"file": (name, content, mime)})


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "healthy"}


def test_upload_records_processing_receipt_and_sends_one_event(client, storage, sent):
    resp = upload(client)

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["status"] == "processing"
    assert body["owner_id"] == "user_1"
    assert body["file_id"] in storage.objects
    assert sent == [
        (
            EXTRACT_RECEIPT_EVENT,
            {
                "url": f"https://minio.example/{body['file_id']}",
                "receiptId": body["id"],
                "fileDisplayName": None,
            },
        )
    ]


def test_upload_rejects_non_pdf(client, sent):
    resp = upload(client, name="photo.png", content=b"\x89PNG", mime="image/png")
    assert resp.status_code == 400
    assert sent == []


def test_upload_rejects_empty_and_oversized_files(client, sent, monkeypatch):
    assert upload(client, content=b"").status_code == 400
    monkeypatch.setattr(settings, "MAX_UPLOAD_SIZE", 4)
    resp = upload(client, content=b"%PDF-1.4")
    assert resp.status_code == 400
    assert "too large" in resp.json()["detail"]
    assert sent == []


def test_enqueue_failure_marks_the_receipt_failed(client, store, monkeypatch):
    def broken(name, data):
        raise ConnectionError("redis unreachable")

    monkeypatch.setattr(receipts_routes, "send_event", broken)
    resp = upload(client)
    assert resp.status_code == 503

    [receipt] = asyncio.run(store.query("user_1"))
    assert receipt.status == ReceiptStatus.FAILED
    assert "could not start extraction" in receipt.failure_reason


def test_upload_url_and_register(client, storage, sent):
    resp = client.post("/receipts/upload-url", json={"file_name": "lunch.pdf"})
    assert resp.status_code == 200
    file_id = resp.json()["file_id"]
    assert file_id.startswith("user_1/")

    payload = {"file_id": file_id, "file_name": "lunch.pdf", "size": 10}
    assert client.post("/receipts/register", json=payload).status_code == 400

    storage.objects[file_id] = b"%PDF"
    resp = client.post("/receipts/register", json=payload)
    assert resp.status_code == 200
    assert resp.json()["status"] == "processing"
    assert len(sent) == 1


def test_register_rejects_files_of_other_owners(client, storage, sent):
    storage.objects["mallory/abc_x.pdf"] = b"%PDF"
    payload = {"file_id": "mallory/abc_x.pdf", "file_name": "x.pdf", "size": 4}
    assert client.post("/receipts/register", json=payload).status_code == 403
    assert sent == []


def test_list_search_and_status_filter(client, store):
    coffee = insert_receipt(store, file_name="coffee.pdf")
    insert_receipt(store, file_name="rent.pdf")
    insert_receipt(store, owner_id="someone_else", file_name="coffee.pdf")

    assert len(client.get("/receipts").json()) == 2
    found = client.get("/receipts", params={"q": "coffee"}).json()
    assert [r["id"] for r in found] == [coffee.id]
    assert client.get("/receipts", params={"status": "completed"}).json() == []
    assert client.get("/receipts", params={"sort": "cheapest"}).status_code == 422


def test_get_and_rename_receipt(client, store):
    receipt = insert_receipt(store)
    assert client.get(f"/receipts/{receipt.id}").json()["file_name"] == "receipt.pdf"

    resp = client.patch(f"/receipts/{receipt.id}", json={"file_display_name": "Team lunch"})
    assert resp.status_code == 200
    assert resp.json()["file_display_name"] == "Team lunch"
    assert resp.json()["status"] == "processing"


def test_other_owners_receipts_are_forbidden(client, store):
    receipt = insert_receipt(store, owner_id="someone_else")
    resp = client.get(f"/receipts/{receipt.id}")
    assert resp.status_code == 403
    assert resp.json() == {"error": "Access denied", "details": receipt.id}
    assert client.delete(f"/receipts/{receipt.id}").status_code == 403


def test_missing_receipt_is_404(client):
    resp = client.get("/receipts/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"] == "Receipt not found"


def test_download_url(client, store, storage):
    receipt = insert_receipt(store)
    assert client.get(f"/receipts/{receipt.id}/download-url").status_code == 404

    storage.objects[receipt.file_id] = b"%PDF"
    resp = client.get(f"/receipts/{receipt.id}/download-url")
    assert resp.json() == {"url": f"https://minio.example/{receipt.file_id}"}


def test_delete_removes_record_and_file(client, store, storage):
    receipt = insert_receipt(store)
    storage.objects[receipt.file_id] = b"%PDF"

    assert client.delete(f"/receipts/{receipt.id}").status_code == 204
    assert storage.deleted == [receipt.file_id]
    assert client.get(f"/receipts/{receipt.id}").status_code == 404


def test_billing_access_token_is_scoped_to_the_subject(client):
    resp = client.get("/billing/access-token")
    assert resp.status_code == 200
    assert resp.json() == {"token": "tok-company-user_1"}


# ---------------------------------------------------------------------------
# Receipt update stream


class FakePubSub:
    def __init__(self, messages):
        self.messages = list(messages)
        self.subscribed = []
        self.closed = False

    async def subscribe(self, channel):
        self.subscribed.append(channel)

    async def unsubscribe(self, channel):
        self.subscribed.remove(channel)

    async def get_message(self, ignore_subscribe_messages=True, timeout=None):
        return self.messages.pop(0) if self.messages else None

    async def aclose(self):
        self.closed = True


class FakeRedis:
    def __init__(self, messages):
        self.pubsub_obj = FakePubSub(messages)

    def pubsub(self):
        return self.pubsub_obj


class FakeRequest:
    def __init__(self, polls):
        self.polls = polls

    async def is_disconnected(self):
        self.polls -= 1
        return self.polls < 0


def test_format_sse_frames_json_and_wraps_other_payloads():
    assert format_frame('{"receiptId": "r1", "status": "saved"}') == {"receiptId": "r1", "status": "saved"}
    assert format_frame(b"hello") == {"raw": "hello"}


def format_frame(data):
    frame = events_routes.format_sse(data).decode()
    assert frame.startswith("event: receipt_update\ndata: ")
    assert frame.endswith("\n\n")
    return json.loads(frame.split("data: ", 1)[1])


@pytest.mark.asyncio
async def test_stream_relays_owner_channel_messages():
    redis = FakeRedis([{"type": "message", "data": '{"receiptId": "r1", "status": "saved"}'}])
    frames = [
        frame
        async for frame in events_routes._receipt_event_stream("user_1", redis, FakeRequest(polls=2))
    ]

    assert frames[0] == b": connected\n\n"
    assert frames[1] == b'event: receipt_update\ndata: {"receiptId": "r1", "status": "saved"}\n\n'
    assert frames[2] == b": keep-alive\n\n"
    assert redis.pubsub_obj.subscribed == []
    assert redis.pubsub_obj.closed


def test_stream_requires_a_token(client):
    app.dependency_overrides[dependencies.get_redis_client] = lambda: FakeRedis([])
    assert client.get("/events/receipts/stream").status_code == 401
