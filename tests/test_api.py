"""
Tests for CL4PDF Backend API endpoints.

Tests cover:
- Health check and route status
- Merge and split, including quota denial and failure handling
- Job lookup and ownership
- Request validation
"""

import asyncio
import logging
import sqlite3
from io import BytesIO
from pathlib import Path

import pytest
from fastapi import UploadFile
from fastapi.testclient import TestClient
from starlette.datastructures import Headers

from conftest import page_widths

from cl4pdf_backend import job_manager as job_manager_module
from cl4pdf_backend.accounts import AccountStore
from cl4pdf_backend.audit import AuditLog
from cl4pdf_backend.database import JobDatabase, connect
from cl4pdf_backend.errors import ValidationError
from cl4pdf_backend.main import UPLOAD_CHUNK_SIZE, _read_upload, create_app
from cl4pdf_backend.models import Caller, SubscriptionTier, UploadedFile
from cl4pdf_backend.services import build_services

GUEST_IP = {"X-Forwarded-For": "203.0.113.5"}


def _pdf_part(name, data, field="files"):
    return (field, (name, data, "application/pdf"))


def _all_jobs(services):
    with connect(Path(services.config.database.path)) as conn:
        return [dict(row) for row in conn.execute("SELECT * FROM pdf_jobs ORDER BY created_at")]


class TestHealthCheck:
    def test_health_check_returns_ok(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_pdf_status_lists_endpoints(self, client):
        response = client.get("/pdf/status")
        assert response.status_code == 200
        assert "POST /pdf/merge" in response.json()["available_endpoints"]


class TestMerge:
    def test_merge_returns_combined_document(self, client, services, artifact_store, make_pdf):
        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(2, 100)), _pdf_part("b.pdf", make_pdf(3, 200))],
            data={"platform": "revisepdf", "options": '{"addBookmarks": true}'},
            headers=GUEST_IP,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "PDFs merged successfully"
        result = body["result"]
        assert result["page_count"] == 5
        assert result["filename"].startswith("merged-")
        assert result["download_url"] == f"https://storage.test/{body['job_id']}/{result['filename']}"

        stored = artifact_store.objects[f"{body['job_id']}/{result['filename']}"]
        assert page_widths(stored) == [100, 101, 200, 201, 202]

        [job] = _all_jobs(services)
        assert job["id"] == body["job_id"]
        assert job["status"] == "completed"
        assert job["platform"] == "revisepdf"
        assert job["user_id"] is None
        assert job["ip_address"] == "203.0.113.5"

    def test_merge_with_one_file_is_rejected_without_a_job(self, client, services, make_pdf):
        response = client.post("/pdf/merge", files=[_pdf_part("a.pdf", make_pdf(1))])

        assert response.status_code == 400
        assert "At least 2" in response.json()["error"]
        assert _all_jobs(services) == []

    def test_merge_with_no_files_is_rejected(self, client, services):
        response = client.post("/pdf/merge", data={"platform": "snackpdf"})

        assert response.status_code == 400
        assert _all_jobs(services) == []

    def test_merge_with_invalid_pdf_fails_the_job(self, client, services, make_pdf):
        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("good.pdf", make_pdf(1)), _pdf_part("bad.pdf", b"this is not a pdf")],
        )

        assert response.status_code == 500
        assert response.json() == {
            "error": "Failed to merge PDFs",
            "details": "Failed to process file: bad.pdf",
        }
        [job] = _all_jobs(services)
        assert job["status"] == "failed"
        assert job["error_message"] == "Failed to process file: bad.pdf"
        assert job["completed_at"] is not None

    def test_transform_exception_never_leaves_job_processing(self, client, services, make_pdf, monkeypatch):
        def explode(documents):
            raise RuntimeError("engine crashed")

        monkeypatch.setattr(job_manager_module.pdf_engine, "merge", explode)

        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1)), _pdf_part("b.pdf", make_pdf(1))],
        )

        assert response.status_code == 500
        assert response.json()["details"] == "engine crashed"
        [job] = _all_jobs(services)
        assert job["status"] == "failed"

    def test_merge_upload_failure_fails_the_job(self, client, services, artifact_store, make_pdf):
        artifact_store.fail_when = lambda key: True

        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1)), _pdf_part("b.pdf", make_pdf(1))],
        )

        assert response.status_code == 500
        [job] = _all_jobs(services)
        assert job["status"] == "failed"
        assert job["output_files"] == "[]"

    def test_non_pdf_upload_is_rejected(self, client, services, make_pdf):
        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1)), ("files", ("notes.txt", b"hello", "text/plain"))],
        )

        assert response.status_code == 400
        assert response.json()["file"] == "notes.txt"
        assert _all_jobs(services) == []

    def test_invalid_platform_is_rejected(self, client, make_pdf):
        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1)), _pdf_part("b.pdf", make_pdf(1))],
            data={"platform": "otherpdf"},
        )

        assert response.status_code == 400
        assert response.json()["valid_platforms"] == ["snackpdf", "revisepdf"]

    def test_upload_limits_are_enforced(self, config, artifact_store, clock, make_pdf):
        config.limits.max_files_per_job = 2
        config.limits.max_file_size = 2048
        services = build_services(config, store=artifact_store, clock=clock)
        limited = TestClient(create_app(services))
        try:
            too_many = limited.post(
                "/pdf/merge",
                files=[_pdf_part(f"{n}.pdf", make_pdf(1)) for n in range(3)],
            )
            assert too_many.status_code == 400
            assert too_many.json()["max_files"] == 2

            too_large = limited.post(
                "/pdf/split",
                files=[_pdf_part("big.pdf", make_pdf(1) + b"\0" * 4096, field="file")],
            )
            assert too_large.status_code == 400
            assert too_large.json()["max_file_size"] == 2048
            assert _all_jobs(services) == []
        finally:
            services.close()

    def test_invalid_options_json_is_rejected(self, client, make_pdf):
        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1)), _pdf_part("b.pdf", make_pdf(1))],
            data={"options": "{not json"},
        )

        assert response.status_code == 400


class TestQuota:
    def test_free_user_at_limit_gets_429_and_no_job(self, client, services, make_user, make_pdf):
        _, headers = make_user(usage_count=10, usage_limit=10)

        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1)), _pdf_part("b.pdf", make_pdf(1))],
            headers=headers,
        )

        assert response.status_code == 429
        body = response.json()
        assert body["reason"] == "usage_limit_exceeded"
        assert body["current_usage"] == 10
        assert body["usage_limit"] == 10
        assert _all_jobs(services) == []

    def test_free_user_success_counts_once(self, client, services, make_user, make_pdf):
        user, headers = make_user(usage_count=2, usage_limit=10)

        response = client.post(
            "/pdf/split",
            files=[_pdf_part("a.pdf", make_pdf(2), field="file")],
            headers=headers,
        )
        services.dispatcher.wait_idle(timeout=5)

        assert response.status_code == 200
        assert services.accounts.get_user(user.id).usage_count == 3

    def test_free_user_failure_does_not_consume_quota(self, client, services, make_user):
        user, headers = make_user(usage_count=2, usage_limit=10)

        response = client.post(
            "/pdf/split",
            files=[_pdf_part("a.pdf", b"garbage", field="file")],
            headers=headers,
        )
        services.dispatcher.wait_idle(timeout=5)

        assert response.status_code == 500
        assert services.accounts.get_user(user.id).usage_count == 2

    def test_premium_user_above_limit_is_admitted_and_counted(self, client, services, make_user, make_pdf):
        user, headers = make_user(tier=SubscriptionTier.PREMIUM, usage_count=999, usage_limit=10)

        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1)), _pdf_part("b.pdf", make_pdf(1))],
            headers=headers,
        )
        services.dispatcher.wait_idle(timeout=5)

        assert response.status_code == 200
        assert services.accounts.get_user(user.id).usage_count == 1000

    def test_guest_fourth_operation_is_denied_until_next_day(self, client, services, clock, make_pdf):
        def split_once():
            response = client.post(
                "/pdf/split",
                files=[_pdf_part("a.pdf", make_pdf(1), field="file")],
                headers=GUEST_IP,
            )
            services.dispatcher.wait_idle(timeout=5)
            return response

        assert [split_once().status_code for _ in range(3)] == [200, 200, 200]

        denied = split_once()
        assert denied.status_code == 429
        assert denied.json()["reason"] == "daily_limit_exceeded"
        assert len(_all_jobs(services)) == 3

        clock.advance(days=1)
        assert split_once().status_code == 200

    def test_guest_cannot_reset_daily_limit_with_forged_hops(self, client, services, make_pdf):
        statuses = []
        for n in range(4):
            response = client.post(
                "/pdf/split",
                files=[_pdf_part("a.pdf", make_pdf(1), field="file")],
                headers={"X-Forwarded-For": f"10.9.9.{n}, 203.0.113.5"},
            )
            services.dispatcher.wait_idle(timeout=5)
            statuses.append(response.status_code)

        assert statuses == [200, 200, 200, 429]
        assert {job["ip_address"] for job in _all_jobs(services)} == {"203.0.113.5"}

    def test_failed_guest_attempt_uses_a_daily_slot(self, client, services):
        for _ in range(3):
            client.post("/pdf/split", files=[_pdf_part("a.pdf", b"garbage", field="file")], headers=GUEST_IP)
            services.dispatcher.wait_idle(timeout=5)

        response = client.post(
            "/pdf/split", files=[_pdf_part("a.pdf", b"garbage", field="file")], headers=GUEST_IP
        )
        assert response.status_code == 429


class TestSplit:
    def _split(self, client, data, **form):
        return client.post("/pdf/split", files=[_pdf_part("doc.pdf", data, field="file")], data=form)

    def test_split_all(self, client, make_pdf):
        response = self._split(client, make_pdf(3), splitMode="all")

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["total_files"] == 3
        assert result["original_pages"] == 3
        assert [f["pages"] for f in result["files"]] == ["1", "2", "3"]
        assert all(f["name"].startswith(f"page-{f['pages']}-") for f in result["files"])

    def test_split_range_drops_out_of_range_tokens(self, client, artifact_store, make_pdf):
        response = self._split(client, make_pdf(5, 100), splitMode="range", pageRanges="1-2,4,9")

        assert response.status_code == 200
        body = response.json()
        files = body["result"]["files"]
        assert [f["pages"] for f in files] == ["1-2", "4-4"]
        stored = [artifact_store.objects[f"{body['job_id']}/{f['name']}"] for f in files]
        assert [page_widths(data) for data in stored] == [[100, 101], [103]]

    def test_split_interval(self, client, make_pdf):
        response = self._split(client, make_pdf(5), splitMode="interval", intervalPages="2")

        assert response.status_code == 200
        assert [f["pages"] for f in response.json()["result"]["files"]] == ["1-2", "3-4", "5-5"]

    def test_split_range_without_ranges_completes_empty(self, client, services, make_pdf):
        response = self._split(client, make_pdf(3), splitMode="range")

        assert response.status_code == 200
        assert response.json()["result"]["total_files"] == 0
        [job] = _all_jobs(services)
        assert job["status"] == "completed"

    def test_split_skips_pieces_whose_upload_fails(self, client, services, artifact_store, make_pdf):
        artifact_store.fail_when = lambda key: "/page-2-" in key

        response = self._split(client, make_pdf(3), splitMode="all")

        assert response.status_code == 200
        assert [f["pages"] for f in response.json()["result"]["files"]] == ["1", "3"]
        [job] = _all_jobs(services)
        assert job["status"] == "completed"

    def test_split_unknown_mode_is_rejected(self, client, services, make_pdf):
        response = self._split(client, make_pdf(2), splitMode="halves")

        assert response.status_code == 400
        assert response.json()["valid_modes"] == ["all", "range", "interval"]
        assert _all_jobs(services) == []

    def test_split_requires_a_file(self, client):
        response = client.post("/pdf/split", data={"splitMode": "all"})

        assert response.status_code == 400
        assert response.json()["error"] == "PDF file is required"


class TestJobLookup:
    def _merge(self, client, headers, make_pdf):
        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1)), _pdf_part("b.pdf", make_pdf(2))],
            headers=headers,
        )
        assert response.status_code == 200
        return response.json()["job_id"]

    def test_owner_can_read_job(self, client, make_user, make_pdf):
        _, headers = make_user()
        job_id = self._merge(client, headers, make_pdf)

        response = client.get(f"/pdf/jobs/{job_id}", headers=headers)

        assert response.status_code == 200
        job = response.json()["job"]
        assert job["id"] == job_id
        assert job["status"] == "completed"
        assert job["tool_name"] == "merge"
        assert [f["name"] for f in job["input_files"]] == ["a.pdf", "b.pdf"]
        assert len(job["output_files"]) == 1
        assert job["error_message"] is None

    def test_other_user_gets_404(self, client, make_user, make_pdf):
        _, owner_headers = make_user()
        _, other_headers = make_user()
        job_id = self._merge(client, owner_headers, make_pdf)

        response = client.get(f"/pdf/jobs/{job_id}", headers=other_headers)

        assert response.status_code == 404
        assert response.json() == {"error": "Job not found"}

    def test_lookup_requires_authentication(self, client):
        response = client.get("/pdf/jobs/some-job")

        assert response.status_code == 401
        assert response.json()["error"] == "Access token required"

    def test_invalid_token_is_rejected(self, client, make_pdf):
        response = client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1)), _pdf_part("b.pdf", make_pdf(1))],
            headers={"Authorization": "Bearer not-a-session"},
        )

        assert response.status_code == 401

    def test_expired_session_is_rejected(self, client, clock, make_user):
        _, headers = make_user()
        clock.advance(days=8)

        response = client.get("/pdf/jobs/some-job", headers=headers)

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid or expired session"

    def test_deactivated_account_is_forbidden(self, client, services, make_user):
        user, headers = make_user()
        services.accounts.set_active(user.id, False)

        response = client.get("/pdf/jobs/some-job", headers=headers)

        assert response.status_code == 403


@pytest.mark.parametrize("path", ["/healthz", "/pdf/status"])
def test_module_level_app_serves(path):
    from cl4pdf_backend.main import app

    assert TestClient(app).get(path).status_code == 200


class CountingStream(BytesIO):
    """A byte stream that records how much has been read from it."""

    bytes_read = 0

    def read(self, size=-1):
        chunk = super().read(size)
        self.bytes_read += len(chunk)
        return chunk


class TestReadUpload:
    def test_oversized_upload_is_rejected_at_the_cap(self):
        stream = CountingStream(b"\0" * (8 * UPLOAD_CHUNK_SIZE))
        upload = UploadFile(file=stream, filename="big.pdf")

        with pytest.raises(ValidationError) as excinfo:
            asyncio.run(_read_upload(upload, max_bytes=1024))

        assert excinfo.value.details == {"file": "big.pdf", "max_file_size": 1024}
        assert stream.bytes_read == 1025

    def test_declared_size_over_the_cap_is_rejected_unread(self):
        stream = CountingStream(b"\0" * 4096)
        upload = UploadFile(file=stream, size=4096, filename="big.pdf")

        with pytest.raises(ValidationError):
            asyncio.run(_read_upload(upload, max_bytes=1024))

        assert stream.bytes_read == 0

    def test_upload_at_the_cap_is_read_whole(self):
        upload = UploadFile(
            file=CountingStream(b"%PDF" * 256),
            filename="doc.pdf",
            headers=Headers({"content-type": "application/pdf"}),
        )

        uploaded = asyncio.run(_read_upload(upload, max_bytes=1024))

        assert uploaded.size == 1024
        assert uploaded.content_type == "application/pdf"


class FailingJobDatabase(JobDatabase):
    """Job table whose inserts or failure updates can be made to raise."""

    def __init__(self, db_path, insert_error=None, fail_terminal_failure=False):
        super().__init__(db_path)
        self.insert_error = insert_error
        self.fail_terminal_failure = fail_terminal_failure

    def insert_job(self, job_data):
        if self.insert_error is not None:
            raise self.insert_error
        super().insert_job(job_data)

    def update_terminal(self, job_id, status, **kwargs):
        if self.fail_terminal_failure and status == "failed":
            raise sqlite3.OperationalError("disk I/O error")
        return super().update_terminal(job_id, status, **kwargs)


class FailingAuditLog(AuditLog):
    def record(self, event):
        raise sqlite3.OperationalError("audit store unavailable")


class FailingIncrementAccounts(AccountStore):
    def increment_usage(self, user_id):
        raise sqlite3.OperationalError("database is locked")


@pytest.fixture
def build_client(config, artifact_store, clock):
    """Build an app around services with some collaborators swapped out."""
    built = []

    def _build(**collaborators):
        services = build_services(config, store=artifact_store, clock=clock, **collaborators)
        built.append(services)
        return services, TestClient(create_app(services))

    yield _build
    for services in built:
        services.close()


def _signed_in(services, tier=SubscriptionTier.FREE, usage_count=0, usage_limit=None):
    user = services.accounts.create_user(
        email=f"user-{tier.value}@example.com",
        subscription_tier=tier,
        usage_count=usage_count,
        usage_limit=usage_limit,
    )
    return user, {"Authorization": f"Bearer {services.accounts.create_session(user.id)}"}


class TestFailureIsolation:
    def _merge(self, client, make_pdf, headers=None, field="files"):
        return client.post(
            "/pdf/merge",
            files=[_pdf_part("a.pdf", make_pdf(1), field=field), _pdf_part("b.pdf", make_pdf(2), field=field)],
            headers=headers or {},
        )

    def test_ledger_create_failure_returns_500_and_releases_the_reservation(
        self, build_client, config, artifact_store, make_pdf
    ):
        database = FailingJobDatabase(
            Path(config.database.path), insert_error=sqlite3.OperationalError("database is locked")
        )
        services, client = build_client(database=database)
        user, headers = _signed_in(services, usage_count=2, usage_limit=10)

        response = self._merge(client, make_pdf, headers)

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to create processing job"}
        assert artifact_store.objects == {}
        assert _all_jobs(services) == []
        assert services.accounts.get_user(user.id).usage_count == 2

    def test_unexpected_create_error_still_releases_the_reservation(self, build_client, config, make_pdf):
        database = FailingJobDatabase(Path(config.database.path), insert_error=RuntimeError("driver bug"))
        services, _ = build_client(database=database)
        user, _ = _signed_in(services, usage_count=2, usage_limit=10)
        files = [
            UploadedFile(name="a.pdf", content_type="application/pdf", data=make_pdf(1)),
            UploadedFile(name="b.pdf", content_type="application/pdf", data=make_pdf(1)),
        ]

        with pytest.raises(RuntimeError):
            services.job_manager.merge(Caller(user=user, ip_address="203.0.113.5"), files)

        assert services.accounts.get_user(user.id).usage_count == 2

    def test_failed_ledger_fail_keeps_the_original_error(self, build_client, config, make_pdf, caplog):
        database = FailingJobDatabase(Path(config.database.path), fail_terminal_failure=True)
        _, client = build_client(database=database)

        with caplog.at_level(logging.ERROR, logger="cl4pdf_backend"):
            response = client.post(
                "/pdf/merge",
                files=[_pdf_part("good.pdf", make_pdf(1)), _pdf_part("bad.pdf", b"not a pdf")],
            )

        assert response.status_code == 500
        assert response.json() == {
            "error": "Failed to merge PDFs",
            "details": "Failed to process file: bad.pdf",
        }
        assert "as failed" in caplog.text

    def test_audit_failure_does_not_affect_the_response(self, build_client, config, clock, make_pdf):
        audit_log = FailingAuditLog(Path(config.database.path), clock=clock)
        services, client = build_client(audit_log=audit_log)

        response = self._merge(client, make_pdf, GUEST_IP)
        services.dispatcher.wait_idle(timeout=5)

        assert response.status_code == 200
        [job] = _all_jobs(services)
        assert job["status"] == "completed"

    def test_usage_increment_failure_does_not_affect_the_response(self, build_client, config, clock, make_pdf):
        accounts = FailingIncrementAccounts(Path(config.database.path), clock=clock)
        services, client = build_client(accounts=accounts)
        user, headers = _signed_in(services, tier=SubscriptionTier.PREMIUM)

        response = self._merge(client, make_pdf, headers)
        services.dispatcher.wait_idle(timeout=5)

        assert response.status_code == 200
        assert services.accounts.get_user(user.id).usage_count == 0

    def test_bracketed_files_field_is_accepted(self, build_client, make_pdf):
        _, client = build_client()

        response = self._merge(client, make_pdf, field="files[]")

        assert response.status_code == 200
        assert response.json()["result"]["page_count"] == 3
