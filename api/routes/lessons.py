from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, ConfigDict, Field

from lesson_companion.processing import (
    AgeGroup,
    CurriculumType,
    LearnerContext,
    LessonJobClient,
    LessonRecord,
    LocalUploadStorage,
    ProcessingJob,
    SourceKind,
)

from api.dependencies import get_job_client, get_storage

router = APIRouter(prefix="/lessons", tags=["lessons"])

UPLOAD_KINDS = (SourceKind.PDF, SourceKind.IMAGE, SourceKind.SLIDES)


class ProcessRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_kind: SourceKind = Field(alias="sourceKind")
    source_ref: str = Field(alias="sourceRef", min_length=1)
    child_id: str = Field(alias="childId", min_length=1)
    parent_id: Optional[str] = Field(default=None, alias="parentId")
    age_group: AgeGroup = Field(default=AgeGroup.OLDER, alias="ageGroup")
    curriculum_type: Optional[CurriculumType] = Field(default=None, alias="curriculumType")
    grade_level: Optional[int] = Field(default=None, alias="gradeLevel", ge=0, le=12)
    subject_hint: Optional[str] = Field(default=None, alias="subjectHint")


def _prepare_job(lesson_id: str, body: ProcessRequest, client: LessonJobClient) -> ProcessingJob:
    job = ProcessingJob(
        lesson_id=lesson_id,
        source_kind=body.source_kind,
        source_ref=body.source_ref,
        child_id=body.child_id,
        parent_id=body.parent_id,
        learner_context=LearnerContext(
            age_group=body.age_group,
            curriculum_type=body.curriculum_type,
            grade_level=body.grade_level,
            subject_hint=body.subject_hint,
        ),
    )
    if client.repo.get_lesson(lesson_id) is None:
        client.repo.save_lesson(
            LessonRecord(
                id=lesson_id,
                child_id=body.child_id,
                parent_id=body.parent_id,
                source_kind=body.source_kind,
                source_ref=body.source_ref,
            )
        )
    return job


@router.post("/{lesson_id}/process", status_code=202)
def process_lesson(lesson_id: str, body: ProcessRequest, client: LessonJobClient = Depends(get_job_client)):
    job = _prepare_job(lesson_id, body, client)
    queued = client.enqueue(job)
    return {"lessonId": lesson_id, "jobId": job.job_id, "queued": queued}


@router.post("/{lesson_id}/upload", status_code=202)
async def upload_lesson(
    lesson_id: str,
    file: UploadFile = File(...),
    source_kind: SourceKind = Form(..., alias="sourceKind"),
    child_id: str = Form(..., alias="childId", min_length=1),
    parent_id: Optional[str] = Form(None, alias="parentId"),
    age_group: AgeGroup = Form(AgeGroup.OLDER, alias="ageGroup"),
    curriculum_type: Optional[CurriculumType] = Form(None, alias="curriculumType"),
    grade_level: Optional[int] = Form(None, alias="gradeLevel", ge=0, le=12),
    subject_hint: Optional[str] = Form(None, alias="subjectHint"),
    client: LessonJobClient = Depends(get_job_client),
    storage: LocalUploadStorage = Depends(get_storage),
):
    if source_kind not in UPLOAD_KINDS:
        raise HTTPException(status_code=400, detail=f"{source_kind.value} lessons are not uploaded as files")
    payload = await file.read()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    path = storage.save_upload(lesson_id, file.filename or "source", payload)
    body = ProcessRequest(
        source_kind=source_kind,
        source_ref=Path(path).resolve().as_uri(),
        child_id=child_id,
        parent_id=parent_id,
        age_group=age_group,
        curriculum_type=curriculum_type,
        grade_level=grade_level,
        subject_hint=subject_hint,
    )
    job = _prepare_job(lesson_id, body, client)
    queued = client.enqueue(job)
    return {"lessonId": lesson_id, "jobId": job.job_id, "queued": queued, "sourceRef": body.source_ref}


@router.get("/{lesson_id}/status")
def get_status(lesson_id: str, client: LessonJobClient = Depends(get_job_client)):
    try:
        report = client.get_status(lesson_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return report.to_dict()
