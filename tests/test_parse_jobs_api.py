from __future__ import annotations

import uuid

from conftest import ScriptedCapability, prompt_of
from statement_intake.modules.extraction.classifier import CLASSIFICATION_PROMPT

STATEMENT_REPLY = {
    "merchantName": "Joe's Diner",
    "processorName": "First Processing",
    "currentState": {
        "totalVolume": 40000,
        "totalTransactions": 1015,
        "totalFees": 1500,
        "cardBreakdown": {
            "visa": {"volume": 25000, "transactions": 625},
            "mastercard": {"volume": 15000, "transactions": 390},
        },
        "fees": {"interchange": 900, "assessments": 100, "processorMarkup": 500},
    },
    "confidence": 85,
}


def _statement_capability() -> ScriptedCapability:
    def _reply(parts):
        if prompt_of(parts) == CLASSIFICATION_PROMPT:
            return {"documentType": "processing_statement", "confidence": 92}
        return STATEMENT_REPLY

    return ScriptedCapability(_reply)


class _FakeAsyncResult:
    id = "celery-task-1"


class _FakeTask:
    def __init__(self) -> None:
        self.enqueued: list[str] = []

    def delay(self, parse_job_id: str) -> _FakeAsyncResult:
        self.enqueued.append(parse_job_id)
        return _FakeAsyncResult()


def test_healthz():
    from fastapi.testclient import TestClient

    from statement_intake.main import app

    resp = TestClient(app).get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_submit_and_poll_parse_job(monkeypatch):
    from fastapi.testclient import TestClient

    from statement_intake.main import app
    from statement_intake.modules.jobs import api as jobs_api
    from statement_intake.modules.jobs import service as jobs_service

    fake_task = _FakeTask()
    monkeypatch.setattr(jobs_api, "process_parse_job_task", fake_task)
    client = TestClient(app)

    resp = client.post(
        "/api/parse-jobs",
        files=[("files", ("statement.txt", b"Monthly statement\n", "text/plain"))],
        headers={"X-Agent-Id": "agent-7"},
    )
    assert resp.status_code == 202
    body = resp.json()
    job_id = body["job_id"]
    assert body["status"] == "QUEUED"
    assert body["file_count"] == 1
    assert body["poll_url"] == f"/api/parse-jobs/{job_id}"
    assert fake_task.enqueued == [job_id]

    queued = client.get(f"/api/parse-jobs/{job_id}").json()
    assert queued["status"] == "QUEUED"
    assert queued["agent_id"] == "agent-7"
    assert queued["files"] == [{"display_name": "statement.txt", "mime_type": "text/plain"}]
    assert queued["result_json"] is None

    monkeypatch.setattr(jobs_service, "build_capability", _statement_capability)
    jobs_service.process_parse_job(parse_job_id=job_id)

    done = client.get(f"/api/parse-jobs/{job_id}").json()
    assert done["status"] == "COMPLETED"
    assert done["progress"] == 100
    assert done["error_message"] is None
    assert done["warnings_json"] == []
    assert done["result_json"]["merchantName"] == "Joe's Diner"
    assert done["result_json"]["effectiveRatePercent"] == 3.75
    assert done["result_json"]["status"] == "success"
    assert done["started_at"] is not None
    assert done["completed_at"] is not None


def test_unconfigured_capability_marks_job_failed(monkeypatch):
    from statement_intake.core.db import SessionLocal
    from statement_intake.modules.jobs import service as jobs_service
    from statement_intake.modules.jobs.models import ParseJobStatus

    with SessionLocal() as session:
        job = jobs_service.create_parse_job(
            session, uploads=[("statement.txt", "text/plain", b"Monthly statement\n")]
        )
        job_id = job.id

    monkeypatch.setattr(
        jobs_service,
        "build_capability",
        lambda: ScriptedCapability(lambda parts: {}, configured=False),
    )
    jobs_service.process_parse_job(parse_job_id=str(job_id))

    with SessionLocal() as session:
        job = jobs_service.get_parse_job(session, job_id=job_id)
        assert job.status == ParseJobStatus.FAILED
        assert job.error_message == "AI_API_KEY is not configured"
        assert job.result_json is None
        assert job.completed_at is not None


def test_stored_files_keep_upload_order():
    from statement_intake.core.db import SessionLocal
    from statement_intake.core.storage import get_storage
    from statement_intake.modules.jobs import service as jobs_service

    with SessionLocal() as session:
        job = jobs_service.create_parse_job(
            session,
            uploads=[
                ("b statement (1).pdf", "application/pdf", b"%PDF-1"),
                ("a.xlsx", None, b"PK\x03\x04"),
            ],
            agent_id=None,
        )
        files = jobs_service.job_files(job)
        job_id = job.id

    assert [f.display_name for f in files] == ["b statement (1).pdf", "a.xlsx"]
    assert files[0].path == f"parse_jobs/{job_id}/00-b_statement_1_.pdf"
    assert files[1].mime_type == "application/octet-stream"
    assert get_storage().get(key=files[0].path) == b"%PDF-1"


def test_unknown_job_is_404():
    from fastapi.testclient import TestClient

    from statement_intake.main import app

    resp = TestClient(app).get(f"/api/parse-jobs/{uuid.uuid4()}")
    assert resp.status_code == 404
