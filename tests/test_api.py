import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from api.dependencies import get_job_client, get_storage
from lesson_companion.processing import (
    InMemoryJobQueue,
    InMemoryLessonRepository,
    LessonJobClient,
    LocalUploadStorage,
    ProcessingStatus,
    SourceKind,
    StoragePaths,
)

from conftest import LESSON_PROSE


@pytest.fixture
def job_client():
    return LessonJobClient(InMemoryJobQueue(), InMemoryLessonRepository())


@pytest.fixture
def storage(tmp_path):
    return LocalUploadStorage(StoragePaths(tmp_path))


@pytest.fixture
def http(job_client, storage):
    app = create_app()
    app.dependency_overrides[get_job_client] = lambda: job_client
    app.dependency_overrides[get_storage] = lambda: storage
    return TestClient(app)


def _body(**overrides):
    body = {"sourceKind": "TEXT", "sourceRef": LESSON_PROSE, "childId": "child-1", "ageGroup": "YOUNG", "gradeLevel": 2}
    body.update(overrides)
    return body


def test_process_queues_once(http, job_client):
    response = http.post("/lessons/lesson-1/process", json=_body(parentId="parent-1"))
    assert response.status_code == 202
    assert response.json() == {"lessonId": "lesson-1", "jobId": "process-lesson-1", "queued": True}

    lesson = job_client.repo.get_lesson("lesson-1")
    assert lesson.processing_status == ProcessingStatus.PROCESSING
    assert lesson.parent_id == "parent-1"
    job = job_client.queue.get("lesson-1")
    assert job.learner_context.grade_level == 2

    again = http.post("/lessons/lesson-1/process", json=_body())
    assert again.status_code == 202
    assert again.json()["queued"] is False


def test_status_reports_processing_then_failure(http, job_client):
    http.post("/lessons/lesson-1/process", json=_body())
    assert http.get("/lessons/lesson-1/status").json() == {"status": "PROCESSING"}

    job_client.repo.update_processing_status("lesson-1", ProcessingStatus.FAILED, "FetchError: Source file not found")
    assert http.get("/lessons/lesson-1/status").json() == {
        "status": "FAILED",
        "error": "FetchError: Source file not found",
    }


def test_unknown_lesson_status_is_404(http):
    response = http.get("/lessons/ghost/status")
    assert response.status_code == 404
    assert response.json()["detail"] == "Lesson ghost not found"


@pytest.mark.parametrize(
    "body",
    [
        _body(sourceKind="AUDIO"),
        _body(gradeLevel=13),
        _body(childId=""),
    ],
)
def test_invalid_requests_are_rejected(http, body):
    assert http.post("/lessons/lesson-1/process", json=body).status_code == 422


def test_upload_saves_file_and_queues_its_reference(http, job_client, tmp_path):
    response = http.post(
        "/lessons/lesson-1/upload",
        files={"file": ("worksheet.pdf", b"%PDF-1.4 test", "application/pdf")},
        data={"sourceKind": "PDF", "childId": "child-1", "ageGroup": "YOUNG", "gradeLevel": "3"},
    )
    assert response.status_code == 202

    saved = tmp_path / "lessons" / "lesson-1" / "source" / "worksheet.pdf"
    assert saved.read_bytes() == b"%PDF-1.4 test"
    assert response.json() == {
        "lessonId": "lesson-1",
        "jobId": "process-lesson-1",
        "queued": True,
        "sourceRef": saved.resolve().as_uri(),
    }

    lesson = job_client.repo.get_lesson("lesson-1")
    assert lesson.source_kind == SourceKind.PDF
    assert lesson.source_ref == saved.resolve().as_uri()
    job = job_client.queue.get("lesson-1")
    assert job.source_ref == saved.resolve().as_uri()
    assert job.learner_context.grade_level == 3


@pytest.mark.parametrize(
    "data, content",
    [
        ({"sourceKind": "TEXT", "childId": "child-1"}, b"Plants need sunlight."),
        ({"sourceKind": "PDF", "childId": "child-1"}, b""),
    ],
)
def test_upload_rejects_non_file_kinds_and_empty_files(http, job_client, tmp_path, data, content):
    response = http.post("/lessons/lesson-1/upload", files={"file": ("notes.txt", content, "text/plain")}, data=data)
    assert response.status_code == 400
    assert job_client.repo.get_lesson("lesson-1") is None
    assert not (tmp_path / "lessons").exists()


def test_healthz(http):
    assert http.get("/healthz").json() == {"status": "ok"}
