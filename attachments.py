from __future__ import annotations

# =============================
# Email attachment storage (signed upload handshake)
# =============================

import os
import re
import base64
import secrets
import time
from urllib.parse import urlparse

import requests
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired

ATTACHMENT_STORE_DIR = os.environ.get("ATTACHMENT_STORE_DIR", os.path.join(os.getcwd(), "attachment_store"))
UPLOAD_TOKEN_MAX_AGE = 15 * 60
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
ATTACHMENT_URL_HOSTS = {
    h.strip().lower() for h in os.environ.get("ATTACHMENT_URL_HOSTS", "").split(",") if h.strip()
}

ALLOWED_CONTENT_TYPES = {
    # Documents
    'application/pdf',
    'application/msword',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
    'application/vnd.ms-excel',
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
    'application/vnd.ms-powerpoint',
    'application/vnd.openxmlformats-officedocument.presentationml.presentation',
    'text/plain',
    'text/csv',
    # Images
    'image/jpeg',
    'image/png',
    'image/gif',
    'image/webp',
    'image/svg+xml',
    # Archives
    'application/zip',
    'application/x-rar-compressed',
    'application/x-7z-compressed',
    # Other
    'application/json',
    'application/xml',
    'text/xml',
}


class AttachmentError(Exception):
    pass


def _serializer(secret_key):
    return URLSafeTimedSerializer(secret_key, salt="email-attachment-upload")


def safe_filename(filename):
    name = os.path.basename(str(filename or '')).strip()
    name = re.sub(r'[^\w.\-]', '_', name)
    return name[:120] or 'attachment'


def issue_upload_token(secret_key, filename, content_type, organizer_id):
    """Reserve a storage key and sign it so the client can upload exactly one blob"""
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise AttachmentError(f"Content type {content_type} is not allowed")

    key = f"email-attachments/{int(time.time() * 1000)}-{secrets.token_hex(6)}-{safe_filename(filename)}"
    token = _serializer(secret_key).dumps({
        "key": key,
        "content_type": content_type,
        "organizer_id": str(organizer_id),
    })
    return key, token


def read_upload_token(secret_key, token):
    try:
        return _serializer(secret_key).loads(token, max_age=UPLOAD_TOKEN_MAX_AGE)
    except SignatureExpired:
        raise AttachmentError("Upload URL has expired")
    except BadSignature:
        raise AttachmentError("Invalid upload URL")


def _path_for(key):
    root = os.path.abspath(ATTACHMENT_STORE_DIR)
    path = os.path.abspath(os.path.join(root, key))
    if not path.startswith(root + os.sep):
        raise AttachmentError("Invalid attachment key")
    return path


def store_blob(key, data):
    if not data:
        raise AttachmentError("Upload body is empty")
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise AttachmentError("Attachment exceeds the 10MB limit")

    path = _path_for(key)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'wb') as fh:
        fh.write(data)
    return path


def load_blob(key):
    path = _path_for(key)
    if not os.path.exists(path):
        raise AttachmentError(f"Attachment {key} not found")
    with open(path, 'rb') as fh:
        return fh.read()


def delete_blob(key):
    try:
        os.remove(_path_for(key))
    except (OSError, AttachmentError) as e:
        print(f"Failed to cleanup blob {key}: {e}")


def allowed_url_hosts():
    hosts = set(ATTACHMENT_URL_HOSTS)
    public_host = urlparse(os.environ.get("PUBLIC_BASE_URL", "")).hostname
    if public_host:
        hosts.add(public_host.lower())
    return hosts


def check_blob_url(url):
    """Only https URLs on our own host or the configured blob hosts may be fetched"""
    parsed = urlparse(str(url or ''))
    host = (parsed.hostname or '').lower()
    if parsed.scheme != 'https' or not host or host not in allowed_url_hosts():
        raise AttachmentError(f"Attachment URL is not allowed: {url}")
    return parsed.geturl()


def process_attachments(attachments):
    """Resolve every attachment to base64 content; the first failure aborts the whole batch"""
    processed = []
    for attachment in attachments or []:
        filename = attachment.get('filename') or 'attachment'
        content_type = attachment.get('contentType') or 'application/octet-stream'

        if attachment.get('blobKey'):
            data = load_blob(attachment['blobKey'])
            content = base64.b64encode(data).decode('ascii')
        elif attachment.get('blobUrl'):
            url = check_blob_url(attachment['blobUrl'])
            try:
                # redirects could lead off the allowed hosts
                response = requests.get(url, timeout=30, allow_redirects=False)
            except requests.RequestException as e:
                raise AttachmentError(f"Failed to download attachment {filename}: {e}")
            if not response.ok or response.is_redirect:
                raise AttachmentError(f"Failed to download attachment {filename}: {response.reason}")
            content = base64.b64encode(response.content).decode('ascii')
        elif attachment.get('content'):
            content = attachment['content']
        else:
            raise AttachmentError(f"Attachment {filename} has neither blobUrl nor content")

        processed.append({"filename": filename, "content": content, "contentType": content_type})

    return processed


def cleanup_attachments(attachments):
    for attachment in attachments or []:
        if attachment.get('blobKey'):
            delete_blob(attachment['blobKey'])
