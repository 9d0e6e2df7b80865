from exam_worker.services.batch_scheduler import BatchScheduler, RoundSummary, windows
from exam_worker.services.cloud_api_client import CloudApiClient
from exam_worker.services.gemini_client import (
    build_generate_content_payload,
    create_gemini_http_client,
    generate_content,
)
from exam_worker.services.image_payload import ImagePayloadResolver, InlineImage
from exam_worker.services.key_pool import KeyPool, KeyStats, load_credentials, mask_credential
from exam_worker.services.local_io import InMemoryWorkSource, JsonDirectoryResultSink, work_items_from_paths
from exam_worker.services.question_analyzer import QuestionAnalyzer
from exam_worker.services.retry_orchestrator import CallOutcome, CallStatus, RetryOrchestrator, RetryPolicy
from exam_worker.services.stream_assembler import AssembledResponse, StreamResponseAssembler, assemble_stream

__all__ = [
    "BatchScheduler",
    "RoundSummary",
    "windows",
    "CloudApiClient",
    "build_generate_content_payload",
    "create_gemini_http_client",
    "generate_content",
    "ImagePayloadResolver",
    "InlineImage",
    "KeyPool",
    "KeyStats",
    "load_credentials",
    "mask_credential",
    "InMemoryWorkSource",
    "JsonDirectoryResultSink",
    "work_items_from_paths",
    "QuestionAnalyzer",
    "CallOutcome",
    "CallStatus",
    "RetryOrchestrator",
    "RetryPolicy",
    "AssembledResponse",
    "StreamResponseAssembler",
    "assemble_stream",
]
