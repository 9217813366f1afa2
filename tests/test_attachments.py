import base64

import pytest
import requests

import attachments as attachment_store
from attachments import AttachmentError

SECRET = "attachment-secret"


def test_upload_token_carries_key_and_owner():
    key, token = attachment_store.issue_upload_token(SECRET, "round 1 pairings.pdf", "application/pdf", "org-1")

    grant = attachment_store.read_upload_token(SECRET, token)

    assert key.startswith("email-attachments/")
    assert key.endswith("round_1_pairings.pdf")
    assert grant == {"key": key, "content_type": "application/pdf", "organizer_id": "org-1"}


def test_disallowed_content_type():
    with pytest.raises(AttachmentError):
        attachment_store.issue_upload_token(SECRET, "run.exe", "application/x-msdownload", "org-1")


def test_expired_upload_token(monkeypatch):
    _, token = attachment_store.issue_upload_token(SECRET, "a.pdf", "application/pdf", "org-1")
    monkeypatch.setattr(attachment_store, 'UPLOAD_TOKEN_MAX_AGE', -1)

    with pytest.raises(AttachmentError, match="expired"):
        attachment_store.read_upload_token(SECRET, token)


def test_tampered_upload_token():
    _, token = attachment_store.issue_upload_token(SECRET, "a.pdf", "application/pdf", "org-1")

    with pytest.raises(AttachmentError, match="Invalid upload URL"):
        attachment_store.read_upload_token("another-secret", token)


def test_store_rejects_escaping_keys(store_dir):
    with pytest.raises(AttachmentError):
        attachment_store.store_blob("../outside.txt", b"data")


def test_store_limits(store_dir, monkeypatch):
    with pytest.raises(AttachmentError, match="empty"):
        attachment_store.store_blob("email-attachments/empty.txt", b"")

    monkeypatch.setattr(attachment_store, 'MAX_ATTACHMENT_BYTES', 4)
    with pytest.raises(AttachmentError, match="limit"):
        attachment_store.store_blob("email-attachments/big.txt", b"12345")


def test_process_stored_and_inline_attachments(store_dir):
    attachment_store.store_blob("email-attachments/rules.txt", b"touch move")

    processed = attachment_store.process_attachments([
        {"filename": "rules.txt", "contentType": "text/plain", "blobKey": "email-attachments/rules.txt"},
        {"filename": "logo.png", "contentType": "image/png", "content": "aGVsbG8="},
    ])

    assert processed[0] == {
        "filename": "rules.txt",
        "content": base64.b64encode(b"touch move").decode("ascii"),
        "contentType": "text/plain",
    }
    assert processed[1]["content"] == "aGVsbG8="


def test_missing_blob_aborts_batch(store_dir):
    with pytest.raises(AttachmentError, match="not found"):
        attachment_store.process_attachments([
            {"filename": "ok.txt", "content": "b2s="},
            {"filename": "gone.pdf", "blobKey": "email-attachments/gone.pdf"},
        ])


@pytest.fixture
def blob_hosts(monkeypatch):
    monkeypatch.setattr(attachment_store, 'ATTACHMENT_URL_HOSTS', {'cdn.example.com'})
    monkeypatch.delenv('PUBLIC_BASE_URL', raising=False)


def test_failed_download_aborts_batch(monkeypatch, blob_hosts):
    class Response:
        ok = False
        is_redirect = False
        reason = "Not Found"
        content = b""

    monkeypatch.setattr(requests, 'get', lambda url, **kwargs: Response())

    with pytest.raises(AttachmentError, match="Failed to download attachment flyer.pdf"):
        attachment_store.process_attachments([{"filename": "flyer.pdf", "blobUrl": "https://cdn.example.com/flyer.pdf"}])


def test_download_error_is_wrapped(monkeypatch, blob_hosts):
    def boom(url, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(requests, 'get', boom)

    with pytest.raises(AttachmentError):
        attachment_store.process_attachments([{"filename": "flyer.pdf", "blobUrl": "https://cdn.example.com/flyer.pdf"}])


def test_download_from_allowed_host(monkeypatch, blob_hosts):
    calls = []

    class Response:
        ok = True
        is_redirect = False
        reason = "OK"
        content = b"pairings"

    def fake_get(url, **kwargs):
        calls.append((url, kwargs))
        return Response()

    monkeypatch.setattr(requests, 'get', fake_get)

    processed = attachment_store.process_attachments([
        {"filename": "flyer.pdf", "contentType": "application/pdf", "blobUrl": "https://CDN.example.com/flyer.pdf"},
    ])

    assert processed[0]["content"] == base64.b64encode(b"pairings").decode("ascii")
    assert calls[0][1]["allow_redirects"] is False


def test_redirecting_download_is_refused(monkeypatch, blob_hosts):
    class Response:
        ok = True
        is_redirect = True
        reason = "Found"
        content = b""

    monkeypatch.setattr(requests, 'get', lambda url, **kwargs: Response())

    with pytest.raises(AttachmentError, match="Found"):
        attachment_store.process_attachments([{"filename": "flyer.pdf", "blobUrl": "https://cdn.example.com/flyer.pdf"}])


@pytest.mark.parametrize('url', [
    'http://169.254.169.254/latest/meta-data/',
    'http://cdn.example.com/flyer.pdf',
    'https://internal.example.org/flyer.pdf',
    'file:///etc/passwd',
    'https:///flyer.pdf',
])
def test_blob_url_outside_allowed_hosts(monkeypatch, blob_hosts, url):
    def fail(*args, **kwargs):
        raise AssertionError("no request expected")

    monkeypatch.setattr(requests, 'get', fail)

    with pytest.raises(AttachmentError, match="not allowed"):
        attachment_store.process_attachments([{"filename": "flyer.pdf", "blobUrl": url}])


def test_public_base_url_host_is_allowed(monkeypatch):
    monkeypatch.setattr(attachment_store, 'ATTACHMENT_URL_HOSTS', set())
    monkeypatch.setenv('PUBLIC_BASE_URL', 'https://club.example.com')

    assert attachment_store.check_blob_url('https://club.example.com/blob/1') == 'https://club.example.com/blob/1'
    with pytest.raises(AttachmentError):
        attachment_store.check_blob_url('https://cdn.example.com/blob/1')


def test_attachment_without_source():
    with pytest.raises(AttachmentError, match="neither"):
        attachment_store.process_attachments([{"filename": "empty.pdf"}])


def test_cleanup_removes_stored_blobs(store_dir):
    path = attachment_store.store_blob("email-attachments/pairings.txt", b"board 1")

    attachment_store.cleanup_attachments([{"blobKey": "email-attachments/pairings.txt"}, {"content": "x"}])

    assert not (store_dir / "email-attachments" / "pairings.txt").exists()
    assert path.endswith("pairings.txt")
