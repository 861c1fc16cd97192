"""
Example: process one lesson end to end in this process using Gemini + SQLite (+ optional Whoosh).

Usage:
    python3 processing_demo.py --kind PDF --source /path/to/worksheet.pdf --lesson-id lesson-1
    python3 processing_demo.py --kind TEXT --source "Plants need sunlight ..." --grade 3

Requires GEMINI_API_KEY. The queue is in-memory; no Redis is needed.
"""

import argparse
import dataclasses
from pathlib import Path

from lesson_companion.logging_setup import setup_logging
from lesson_companion.processing import (
    AgeGroup,
    CurriculumType,
    InMemoryJobQueue,
    LearnerContext,
    LessonJobClient,
    LessonRecord,
    LocalUploadStorage,
    ProcessingConfig,
    ProcessingJob,
    SourceKind,
    SqlAlchemyLessonRepository,
    StoragePaths,
    WorkerPool,
    build_processor,
)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--kind", required=True, choices=[k.value for k in SourceKind], help="Source kind")
    parser.add_argument("--source", required=True, help="Path/URL of the source, or the text itself for TEXT")
    parser.add_argument("--lesson-id", default="lesson-demo", help="Lesson id (for DB/queue)")
    parser.add_argument("--child-id", default="child-demo", help="Learner id")
    parser.add_argument("--age-group", default=AgeGroup.OLDER.value, choices=[a.value for a in AgeGroup])
    parser.add_argument("--curriculum", default=None, choices=[c.value for c in CurriculumType])
    parser.add_argument("--grade", default=None, type=int, help="Grade level 0-8")
    parser.add_argument("--db", default=Path("./data/lesson_companion.db"), type=Path, help="SQLite DB path")
    parser.add_argument("--whoosh-dir", default=None, type=Path, help="Whoosh index directory")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    args = parser.parse_args()

    setup_logging(args.log_level.upper())
    args.db.parent.mkdir(parents=True, exist_ok=True)
    config = dataclasses.replace(
        ProcessingConfig.from_env(),
        database_url=f"sqlite+pysqlite:///{args.db}",
        whoosh_index_dir=str(args.whoosh_dir) if args.whoosh_dir else None,
    )

    source_ref = args.source
    if args.kind != SourceKind.TEXT.value and Path(args.source).exists():
        storage = LocalUploadStorage(StoragePaths(Path(config.upload_storage_root)))
        saved = storage.save_upload(args.lesson_id, Path(args.source).name, Path(args.source).read_bytes())
        source_ref = saved.resolve().as_uri()

    repo = SqlAlchemyLessonRepository(config.database_url)
    repo.save_lesson(
        LessonRecord(id=args.lesson_id, child_id=args.child_id, source_kind=SourceKind(args.kind), source_ref=source_ref)
    )

    queue = InMemoryJobQueue()
    client = LessonJobClient(queue, repo)
    pool = WorkerPool(queue, build_processor(config, repo), repo, config)

    job = ProcessingJob(
        lesson_id=args.lesson_id,
        source_kind=SourceKind(args.kind),
        source_ref=source_ref,
        child_id=args.child_id,
        learner_context=LearnerContext(
            age_group=AgeGroup(args.age_group),
            curriculum_type=CurriculumType(args.curriculum) if args.curriculum else None,
            grade_level=args.grade,
        ),
    )
    client.enqueue(job)
    print(f"Processing {job.job_id} ({args.kind})")
    pool.run_until_done(args.lesson_id)

    status = client.get_status(args.lesson_id)
    lesson = repo.get_lesson(args.lesson_id)
    print(f"Finished with status={status.status.value}, error={status.error}")
    if lesson and lesson.formatted_content:
        print(f"Title: {lesson.title}")
        print(f"Exercises: {len(repo.list_exercises(args.lesson_id))}")
        print(lesson.formatted_content[:2000])


if __name__ == "__main__":
    main()
