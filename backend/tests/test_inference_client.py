from types import SimpleNamespace

import httpx
import openai
import pytest

from receipt_scanner.core.exceptions import FetchError, InferenceError, UploadError
from receipt_scanner.services.inference_client import FetchedDocument, InferenceClient, file_name_from_url


class FakeOpenAI:
    """Just enough of ``AsyncOpenAI`` for ``files.create`` and ``chat.completions.create``."""

    def __init__(self, *, upload=None, completion=None):
        self.uploads = []
        self.requests = []
        self._upload = upload or (lambda **kw: SimpleNamespace(id="file-abc"))
        self._completion = completion or (lambda **kw: _completion("{}"))
        self.files = SimpleNamespace(create=self._files_create)
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._chat_create))

    async def _files_create(self, **kwargs):
        self.uploads.append(kwargs)
        return self._upload(**kwargs)

    async def _chat_create(self, **kwargs):
        self.requests.append(kwargs)
        return self._completion(**kwargs)

    async def close(self):
        pass


def _completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def _raise(exc):
    def _inner(**kwargs):
        raise exc
    return _inner


def http_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_file_name_from_url_uses_the_last_path_segment():
    assert file_name_from_url("https://bucket.example/user_1/abc_my%20receipt.pdf?X-Amz-Signature=1") == "abc_my receipt.pdf"
    assert file_name_from_url("https://bucket.example/") == "receipt.pdf"


@pytest.mark.asyncio
async def test_fetch_document_returns_bytes_and_metadata():
    def handler(request):
        return httpx.Response(200, content=b"%PDF-1.4", headers={"content-type": "application/pdf; charset=binary"})

    client = InferenceClient(FakeOpenAI(), http_client(handler))
    document = await client.fetch_document("https://files.example/u/abc_receipt.pdf")
    assert document.content == b"%PDF-1.4"
    assert document.content_type == "application/pdf"
    assert document.file_name == "abc_receipt.pdf"


@pytest.mark.asyncio
async def test_fetch_document_non_2xx_is_fetch_error():
    client = InferenceClient(FakeOpenAI(), http_client(lambda request: httpx.Response(403)))
    with pytest.raises(FetchError) as excinfo:
        await client.fetch_document("https://files.example/expired.pdf")
    assert excinfo.value.status_code == 403
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_fetch_document_transport_error_is_fetch_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = InferenceClient(FakeOpenAI(), http_client(handler))
    with pytest.raises(FetchError):
        await client.fetch_document("https://files.example/doc.pdf")


@pytest.mark.asyncio
async def test_upload_document_sends_purpose_and_returns_file_id():
    fake = FakeOpenAI()
    client = InferenceClient(fake, http_client(lambda r: httpx.Response(200)), file_purpose="user_data")
    file_id = await client.upload_document(FetchedDocument(content=b"%PDF", file_name="r.pdf"))
    assert file_id == "file-abc"
    assert fake.uploads == [{"file": ("r.pdf", b"%PDF", "application/pdf"), "purpose": "user_data"}]


@pytest.mark.asyncio
async def test_upload_rejection_carries_provider_status_and_message():
    response = httpx.Response(400, request=httpx.Request("POST", "https://api.openai.com/v1/files"))
    error = openai.APIStatusError("unsupported file", response=response, body=None)
    client = InferenceClient(FakeOpenAI(upload=_raise(error)), http_client(lambda r: httpx.Response(200)))
    with pytest.raises(UploadError) as excinfo:
        await client.upload_document(FetchedDocument(content=b"%PDF"))
    assert excinfo.value.status_code == 400
    assert excinfo.value.provider_message == "unsupported file"


@pytest.mark.asyncio
async def test_infer_references_the_file_and_returns_raw_text():
    fake = FakeOpenAI(completion=lambda **kw: _completion('```json\n{"merchant": {}}\n```'))
    client = InferenceClient(fake, http_client(lambda r: httpx.Response(200)), model="test-model", prompt="extract it")

    text = await client.infer("file-abc")

    assert text == '```json\n{"merchant": {}}\n```'
    request = fake.requests[0]
    assert request["model"] == "test-model"
    content = request["messages"][0]["content"]
    assert content[0] == {"type": "file", "file": {"file_id": "file-abc"}}
    assert content[1] == {"type": "text", "text": "extract it"}


@pytest.mark.asyncio
async def test_infer_empty_reply_is_inference_error():
    client = InferenceClient(FakeOpenAI(completion=lambda **kw: _completion("  ")), http_client(lambda r: httpx.Response(200)))
    with pytest.raises(InferenceError):
        await client.infer("file-abc")


@pytest.mark.asyncio
async def test_infer_connection_failure_is_inference_error():
    error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    client = InferenceClient(FakeOpenAI(completion=_raise(error)), http_client(lambda r: httpx.Response(200)))
    with pytest.raises(InferenceError) as excinfo:
        await client.infer("file-abc")
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_extract_composes_fetch_upload_and_infer():
    fake = FakeOpenAI(completion=lambda **kw: _completion('{"merchant": {"name": "Acme"}}'))
    client = InferenceClient(fake, http_client(lambda r: httpx.Response(200, content=b"%PDF")))
    assert await client.extract("https://files.example/doc.pdf") == '{"merchant": {"name": "Acme"}}'
    assert fake.uploads[0]["file"][1] == b"%PDF"
    assert fake.requests[0]["messages"][0]["content"][0]["file"]["file_id"] == "file-abc"
