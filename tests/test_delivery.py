"""End-to-end tests for the token-gated download and preview endpoints."""

import asyncio
from datetime import timedelta

from labben.dependencies import get_audit_logger
from labben.main import app
from labben.models.download_log import DownloadLog
from labben.routers import delivery
from labben.services import token_service
from labben.services.audit_service import AuditLogger
from labben.services.storage_service import StorageTransientError
from labben.services.token_service import find_token, issue_token
from tests.test_utils import ADMIN_EMAIL, create_document, utcnow

PDF_BYTES = b"%PDF-1.7\n1 0 obj << /Type /Catalog >> endobj\n%%EOF\n"
PNG_BYTES = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"


def _issue(db_session, action_type="download", document_id="doc-123"):
    _, raw_token = issue_token(db_session, document_id, ADMIN_EMAIL, action_type)
    return raw_token


class TestDownload:
    def test_download_then_reuse_is_rejected(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        raw_token = _issue(db_session)

        response = client.get("/api/download", params={"token": raw_token})

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["content-disposition"] == 'attachment; filename="Invoice.pdf"'
        assert response.content == PDF_BYTES

        second = client.get("/api/download", params={"token": raw_token})

        assert second.status_code == 403
        assert second.json() == {"error": "Invalid or expired token"}

    def test_download_cache_headers(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES

        response = client.get("/api/download", params={"token": _issue(db_session)})

        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["expires"] == "0"

    def test_fetches_from_configured_bucket(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES

        client.get("/api/download", params={"token": _issue(db_session)})

        assert storage.requests == [("customer_docs", "blog-images/doc-123.pdf")]

    def test_missing_token(self, client):
        response = client.get("/api/download")

        assert response.status_code == 400
        assert response.json() == {"error": "Token is required"}

    def test_empty_token(self, client):
        response = client.get("/api/download", params={"token": ""})

        assert response.status_code == 400
        assert response.json() == {"error": "Token is required"}

    def test_unknown_token(self, client, storage):
        response = client.get("/api/download", params={"token": "a" * 64})

        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}
        assert storage.requests == []

    def test_expired_token(self, client, db_session, storage, monkeypatch):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        raw_token = _issue(db_session)

        monkeypatch.setattr(token_service, "utcnow", lambda: utcnow() + timedelta(hours=2))

        response = client.get("/api/download", params={"token": raw_token})

        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}

    def test_preview_token_cannot_download(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        raw_token = _issue(db_session, "preview")

        response = client.get("/api/download", params={"token": raw_token})

        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}

    def test_post_not_allowed(self, client, db_session):
        create_document(db_session)

        response = client.post("/api/download", params={"token": _issue(db_session)})

        assert response.status_code == 405
        assert response.json() == {"error": "Method Not Allowed"}

    def test_document_deleted_after_issue(self, client, db_session, storage):
        raw_token = _issue(db_session, document_id="doc-gone")

        response = client.get("/api/download", params={"token": raw_token})

        assert response.status_code == 404
        assert response.json() == {"error": "File not found"}

    def test_unusable_file_path(self, client, db_session, storage):
        create_document(db_session, file_path="https://cdn.example.com/other-bucket/doc.pdf")

        response = client.get("/api/download", params={"token": _issue(db_session)})

        assert response.status_code == 404
        assert response.json() == {"error": "File not found"}
        assert storage.requests == []

    def test_url_file_path(self, client, db_session, storage):
        create_document(
            db_session,
            file_path=(
                "https://abc.supabase.co/storage/v1/object/public/customer_docs/"
                "blog-images/doc-123.pdf"
            ),
        )
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES

        response = client.get("/api/download", params={"token": _issue(db_session)})

        assert response.status_code == 200
        assert response.content == PDF_BYTES

    def test_missing_object_keeps_token(self, client, db_session, storage):
        create_document(db_session)
        raw_token = _issue(db_session)

        response = client.get("/api/download", params={"token": raw_token})

        assert response.status_code == 404
        assert response.json() == {"error": "File not found"}
        assert find_token(db_session, raw_token).used_at is None

    def test_storage_outage_keeps_token(self, client, db_session, storage):
        create_document(db_session)
        raw_token = _issue(db_session)
        storage.error = StorageTransientError("Storage request timed out")

        response = client.get("/api/download", params={"token": raw_token})

        assert response.status_code == 404
        assert response.json() == {"error": "File not found"}

        # Storage recovers, the same link still works
        storage.error = None
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        retry = client.get("/api/download", params={"token": raw_token})

        assert retry.status_code == 200
        assert retry.content == PDF_BYTES

    def test_token_expiring_during_fetch_is_refused(
        self, client, db_session, storage, monkeypatch
    ):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        token, raw_token = issue_token(db_session, "doc-123", ADMIN_EMAIL, ttl_minutes=1)
        expires_at = token.expires_at
        fetch = storage.download_bytes

        async def slow_fetch(**kwargs):
            content = await fetch(**kwargs)
            monkeypatch.setattr(
                token_service, "utcnow", lambda: expires_at + timedelta(minutes=4)
            )
            return content

        monkeypatch.setattr(storage, "download_bytes", slow_fetch)

        response = client.get("/api/download", params={"token": raw_token})

        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}
        db_session.refresh(token)
        assert token.used_at is None
        log = db_session.query(DownloadLog).one()
        assert log.download_successful is False
        assert log.error_message == "consume_failed"

    def test_token_work_runs_off_the_event_loop(self, client, db_session, storage, monkeypatch):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        calls = []

        def recording(func):
            def wrapper(*args, **kwargs):
                try:
                    asyncio.get_running_loop()
                    calls.append((func.__name__, "event_loop"))
                except RuntimeError:
                    calls.append((func.__name__, "worker"))
                return func(*args, **kwargs)

            return wrapper

        monkeypatch.setattr(delivery, "check_token", recording(delivery.check_token))
        monkeypatch.setattr(delivery, "mark_token_used", recording(delivery.mark_token_used))

        response = client.get("/api/download", params={"token": _issue(db_session)})

        assert response.status_code == 200
        assert calls == [("check_token", "worker"), ("mark_token_used", "worker")]

    def test_file_name_with_spaces_and_unicode(self, client, db_session, storage):
        create_document(db_session, file_name="Årsrapport 2024.pdf")
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES

        response = client.get("/api/download", params={"token": _issue(db_session)})

        assert response.status_code == 200
        assert (
            response.headers["content-disposition"]
            == 'attachment; filename="%C3%85rsrapport%202024.pdf"'
        )

    def test_unknown_extension_is_octet_stream(self, client, db_session, storage):
        create_document(db_session, file_path="blog-images/doc-123.xyz", file_name="notes.xyz")
        storage.objects["blog-images/doc-123.xyz"] = b"opaque"

        response = client.get("/api/download", params={"token": _issue(db_session)})

        assert response.headers["content-type"] == "application/octet-stream"


class TestPreview:
    def test_preview_is_inline_and_reusable(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        raw_token = _issue(db_session, "preview")

        first = client.get("/api/preview", params={"token": raw_token})
        second = client.get("/api/preview", params={"token": raw_token})

        for response in (first, second):
            assert response.status_code == 200
            assert response.content == PDF_BYTES
            assert response.headers["content-type"] == "application/pdf"
            assert response.headers["content-disposition"] == 'inline; filename="Invoice.pdf"'

    def test_preview_security_headers(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES

        response = client.get("/api/preview", params={"token": _issue(db_session, "preview")})

        assert response.headers["cache-control"] == "private, no-cache, no-store, must-revalidate"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "SAMEORIGIN"

    def test_image_preview(self, client, db_session, storage):
        create_document(db_session, file_path="scans/receipt.PNG", file_name="receipt.PNG")
        storage.objects["scans/receipt.PNG"] = PNG_BYTES

        response = client.get("/api/preview", params={"token": _issue(db_session, "preview")})

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"

    def test_download_token_cannot_preview(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        raw_token = _issue(db_session, "download")

        response = client.get("/api/preview", params={"token": raw_token})

        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}
        # Rejection on the wrong endpoint does not spend the download token
        assert client.get("/api/download", params={"token": raw_token}).status_code == 200

    def test_missing_token(self, client):
        response = client.get("/api/preview")

        assert response.status_code == 400
        assert response.json() == {"error": "Token is required"}


class TestAuditTrail:
    def test_successful_download_is_logged(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        raw_token = _issue(db_session)
        token = find_token(db_session, raw_token)

        client.get(
            "/api/download",
            params={"token": raw_token},
            headers={"User-Agent": "pytest-agent", "X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        )

        log = db_session.query(DownloadLog).one()
        assert log.document_id == "doc-123"
        assert log.token_id == token.id
        assert log.user_id == ADMIN_EMAIL
        assert log.action_type == "download"
        assert log.download_successful is True
        assert log.file_size == len(PDF_BYTES)
        assert log.ip_address == "203.0.113.7"
        assert log.user_agent == "pytest-agent"

    def test_successful_preview_is_logged(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        raw_token = _issue(db_session, "preview")
        token = find_token(db_session, raw_token)

        client.get(
            "/api/preview",
            params={"token": raw_token},
            headers={"User-Agent": "pytest-agent", "X-Forwarded-For": "198.51.100.2"},
        )

        log = db_session.query(DownloadLog).one()
        assert log.document_id == "doc-123"
        assert log.token_id == token.id
        assert log.action_type == "preview"
        assert log.download_successful is True
        assert log.file_size == len(PDF_BYTES)
        assert log.ip_address == "198.51.100.2"
        assert log.user_agent == "pytest-agent"
        db_session.refresh(token)
        assert token.used_at is None

    def test_rejected_preview_is_logged_and_token_survives(self, client, db_session, storage):
        create_document(db_session)
        raw_token = _issue(db_session, "preview")

        missing = client.get(
            "/api/preview", params={"token": raw_token}, headers={"X-Real-IP": "198.51.100.3"}
        )
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        retry = client.get("/api/preview", params={"token": raw_token})

        assert missing.status_code == 404
        assert retry.status_code == 200
        logs = db_session.query(DownloadLog).all()
        assert {log.action_type for log in logs} == {"preview"}
        failed = next(log for log in logs if not log.download_successful)
        assert failed.error_message == "storage_object_missing"
        assert failed.ip_address == "198.51.100.3"
        assert find_token(db_session, raw_token).used_at is None

    def test_rejected_download_is_logged(self, client, db_session, storage):
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES
        raw_token = _issue(db_session)

        client.get("/api/download", params={"token": raw_token})
        client.get("/api/download", params={"token": raw_token})

        logs = db_session.query(DownloadLog).all()
        assert sorted(log.download_successful for log in logs) == [False, True]
        failed = next(log for log in logs if not log.download_successful)
        assert failed.error_message == "already_used"

    def test_unknown_token_is_not_logged(self, client, db_session):
        client.get("/api/download", params={"token": "b" * 64})

        assert db_session.query(DownloadLog).count() == 0

    def test_failing_audit_logger_does_not_block_delivery(
        self, client, db_session, storage
    ):
        def broken_session_factory():
            raise RuntimeError("audit database unreachable")

        app.dependency_overrides[get_audit_logger] = lambda: AuditLogger(broken_session_factory)
        create_document(db_session)
        storage.objects["blog-images/doc-123.pdf"] = PDF_BYTES

        response = client.get("/api/download", params={"token": _issue(db_session)})

        assert response.status_code == 200
        assert response.content == PDF_BYTES
        assert db_session.query(DownloadLog).count() == 0
