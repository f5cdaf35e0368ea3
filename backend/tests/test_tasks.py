import asyncio
import json
from types import SimpleNamespace

import dramatiq
import pytest
import redis
from pydantic import ValidationError

from conftest import FakeInference, FakeMetering, insert_receipt
from receipt_scanner.core import events, tasks
from receipt_scanner.core.config import settings
from receipt_scanner.core.exceptions import InferenceError, MalformedOutputError
from receipt_scanner.models.enums import PipelineStage, ReceiptStatus
from receipt_scanner.models.schemas import JobResult
from receipt_scanner.services.extraction_pipeline import ExtractionPipeline
from receipt_scanner.services.step_store import InMemoryStepStore


class FakePub:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, channel, body):
        if self.fail:
            raise redis.ConnectionError("redis down")
        self.published.append((channel, json.loads(body)))


class RecordingPipeline:
    def __init__(self):
        self.runs = []
        self.closed = False

    async def run(self, job, *, job_key=None, final_attempt=True):
        self.runs.append((job, job_key, final_attempt))
        return JobResult(receipt_id=job.receipt_id, status="saved", stage=PipelineStage.DONE, owner_id="user_1")

    async def aclose(self):
        self.closed = True


@pytest.fixture
def pub(monkeypatch):
    fake = FakePub()
    monkeypatch.setattr(tasks, "_get_redis_pub", lambda: fake)
    return fake


@pytest.fixture
def stub_broker():
    tasks.broker.flush_all()
    yield tasks.broker
    tasks.broker.flush_all()


def test_test_environment_uses_the_stub_broker():
    assert type(tasks.broker).__name__ == "StubBroker"
    assert tasks.extract_receipt.queue_name == "receipts"


def test_extract_receipt_runs_the_pipeline_and_publishes_completion(monkeypatch, store, pub):
    receipt = insert_receipt(store)
    pipeline = ExtractionPipeline(FakeInference(), store, FakeMetering(store), InMemoryStepStore(), metering_backoff=0)
    monkeypatch.setattr(tasks, "build_pipeline", lambda: pipeline)

    event = tasks.extract_receipt("https://files.example/doc.pdf", receipt.id, "Groceries")

    assert event == {"receiptId": receipt.id, "status": "saved"}
    assert pub.published == [
        ("receipts:user:user_1", event),
        (f"receipts:receipt:{receipt.id}", event),
    ]


def test_failed_job_still_publishes_to_the_owner(monkeypatch, store, pub):
    receipt = insert_receipt(store)
    pipeline = ExtractionPipeline(FakeInference("no json here"), store, FakeMetering(store), InMemoryStepStore())
    monkeypatch.setattr(tasks, "build_pipeline", lambda: pipeline)

    event = tasks.extract_receipt("https://files.example/doc.pdf", receipt.id)

    assert event == {"receiptId": receipt.id, "status": "failed"}
    assert ("receipts:user:user_1", event) in pub.published


def test_publish_errors_do_not_fail_the_job(monkeypatch):
    monkeypatch.setattr(tasks, "_get_redis_pub", lambda: FakePub(fail=True))
    monkeypatch.setattr(tasks, "build_pipeline", RecordingPipeline)
    assert tasks.extract_receipt("https://files.example/doc.pdf", "r1")["status"] == "saved"


def test_message_id_and_retry_count_drive_the_pipeline(monkeypatch, pub):
    pipeline = RecordingPipeline()
    monkeypatch.setattr(tasks, "build_pipeline", lambda: pipeline)
    message = SimpleNamespace(message_id="msg-42", options={"retries": 1})
    monkeypatch.setattr(tasks.CurrentMessage, "get_current_message", classmethod(lambda cls: message))

    tasks.extract_receipt("https://files.example/doc.pdf", "r1")
    message.options["retries"] = settings.EXTRACTION_MAX_RETRIES
    tasks.extract_receipt("https://files.example/doc.pdf", "r1")

    (job, key, final), (_, _, last_final) = pipeline.runs
    assert job.receipt_id == "r1"
    assert key == "msg-42"
    assert final is False
    assert last_final is True
    assert pipeline.closed


def test_without_a_current_message_the_run_is_final(monkeypatch, pub):
    pipeline = RecordingPipeline()
    monkeypatch.setattr(tasks, "build_pipeline", lambda: pipeline)
    tasks.extract_receipt("https://files.example/doc.pdf", "r1")
    _, key, final = pipeline.runs[0]
    assert key is None
    assert final is True


def test_only_retryable_errors_are_retried():
    assert tasks._should_retry(0, InferenceError("slow")) is True
    assert tasks._should_retry(settings.EXTRACTION_MAX_RETRIES, InferenceError("slow")) is False
    assert tasks._should_retry(0, MalformedOutputError("bad json")) is False
    assert tasks._should_retry(0, RuntimeError("bug")) is False


# ---------------------------------------------------------------------------
# Event bus / trigger adapter


def test_upload_event_enqueues_exactly_one_extraction(stub_broker):
    events.send_event(
        events.EXTRACT_RECEIPT_EVENT,
        {"url": "https://files.example/doc.pdf", "receiptId": "r1", "fileDisplayName": "Lunch"},
    )

    queue = stub_broker.queues["receipts"]
    assert queue.qsize() == 1
    message = dramatiq.Message.decode(queue.get())
    assert message.actor_name == "extract_receipt"
    assert list(message.args) == ["https://files.example/doc.pdf", "r1", "Lunch"]


def test_trigger_adapter_accepts_document_url_spelling(monkeypatch):
    sent = []
    monkeypatch.setattr(events, "extract_receipt", SimpleNamespace(send=lambda *args: sent.append(args)))

    events.on_upload_completed({"documentUrl": "https://files.example/doc.pdf", "receiptId": "r2"})

    assert sent == [("https://files.example/doc.pdf", "r2", None)]


@pytest.mark.parametrize(
    "payload",
    [
        {"receiptId": "r1"},
        {"url": "https://files.example/doc.pdf"},
        {"url": "not a url", "receiptId": "r1"},
        {"url": "https://files.example/doc.pdf", "receiptId": "  "},
    ],
)
def test_trigger_adapter_rejects_invalid_payloads(monkeypatch, payload):
    sent = []
    monkeypatch.setattr(events, "extract_receipt", SimpleNamespace(send=lambda *args: sent.append(args)))
    with pytest.raises(ValidationError):
        events.on_upload_completed(payload)
    assert sent == []


def test_unknown_event_name_is_rejected():
    with pytest.raises(ValueError):
        events.send_event("receipts/unknown", {})


def test_stored_status_is_completed_after_worker_run(monkeypatch, store, pub):
    receipt = insert_receipt(store)
    pipeline = ExtractionPipeline(FakeInference(), store, FakeMetering(store), InMemoryStepStore())
    monkeypatch.setattr(tasks, "build_pipeline", lambda: pipeline)
    tasks.extract_receipt("https://files.example/doc.pdf", receipt.id)

    saved = asyncio.run(store.get(receipt.id, "user_1"))
    assert saved.status == ReceiptStatus.COMPLETED
    assert saved.merchant_name == "Acme"
