"""
Content-processing subsystem exports.
"""

from .analyzer import ContentAnalyzer
from .cache import DashboardCache, NoopDashboardCache, RedisDashboardCache
from .config import ProcessingConfig
from .conversion import ConversionServiceClient
from .engine import DoclingOcrEngine, OcrEngine, VisionOcrEngine
from .errors import (
    AnalysisError,
    ConversionError,
    ExtractionError,
    FetchError,
    LeaseLostError,
    ModelCallError,
    PersistenceError,
    ProcessingError,
    describe_error,
)
from .extractors import (
    HttpTranscriptProvider,
    ImageVisionOCR,
    PDFVisionExtractor,
    SlideDeckExtractor,
    TextPassthrough,
    UnconfiguredTranscriptProvider,
    VideoTranscriptExtractor,
)
from .formatter import DocumentFormatter, format_lesson
from .indexing import LessonIndexer, NoopIndexer, WhooshIndexer
from .job_queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from .markers import check_binding, extract_markers
from .model_client import Attachment, GeminiModelClient, GenerativeModel
from .models import (
    AgeGroup,
    CurriculumType,
    Difficulty,
    ExerciseRecord,
    ExerciseType,
    ExtractionResult,
    LearnerContext,
    LessonRecord,
    ProcessingJob,
    ProcessingStatus,
    SideEffectReport,
    SourceKind,
    StatusReport,
)
from .processor import LessonProcessor, ProcessingOutcome
from .progress import InMemoryProgressTracker, ProgressTracker, SqlAlchemyProgressTracker
from .repository import InMemoryLessonRepository, LessonRepository, SqlAlchemyLessonRepository
from .router import ExtractionRouter
from .schema import ContentBlock, DetectedExercise, StructuredAnalysis
from .service import LessonJobClient
from .side_effects import SideEffectCoordinator
from .storage import HttpSourceFetcher, LocalUploadStorage, StoragePaths
from .worker import WorkerPool, build_processor, build_worker_pool

__all__ = [
    "AgeGroup",
    "AnalysisError",
    "Attachment",
    "ContentAnalyzer",
    "ContentBlock",
    "ConversionError",
    "ConversionServiceClient",
    "CurriculumType",
    "DashboardCache",
    "DetectedExercise",
    "Difficulty",
    "DoclingOcrEngine",
    "DocumentFormatter",
    "ExerciseRecord",
    "ExerciseType",
    "ExtractionError",
    "ExtractionResult",
    "ExtractionRouter",
    "FetchError",
    "GeminiModelClient",
    "GenerativeModel",
    "HttpSourceFetcher",
    "HttpTranscriptProvider",
    "ImageVisionOCR",
    "InMemoryJobQueue",
    "InMemoryLessonRepository",
    "InMemoryProgressTracker",
    "JobQueue",
    "LearnerContext",
    "LeaseLostError",
    "LessonIndexer",
    "LessonJobClient",
    "LessonProcessor",
    "LessonRecord",
    "LessonRepository",
    "LocalUploadStorage",
    "ModelCallError",
    "NoopDashboardCache",
    "NoopIndexer",
    "OcrEngine",
    "PDFVisionExtractor",
    "PersistenceError",
    "ProcessingConfig",
    "ProcessingError",
    "ProcessingJob",
    "ProcessingOutcome",
    "ProcessingStatus",
    "ProgressTracker",
    "RedisDashboardCache",
    "RedisJobQueue",
    "SideEffectCoordinator",
    "SideEffectReport",
    "SlideDeckExtractor",
    "SourceKind",
    "SqlAlchemyLessonRepository",
    "SqlAlchemyProgressTracker",
    "StatusReport",
    "StoragePaths",
    "StructuredAnalysis",
    "TextPassthrough",
    "UnconfiguredTranscriptProvider",
    "VideoTranscriptExtractor",
    "VisionOcrEngine",
    "WhooshIndexer",
    "WorkerPool",
    "build_processor",
    "build_worker_pool",
    "check_binding",
    "describe_error",
    "extract_markers",
    "format_lesson",
]
