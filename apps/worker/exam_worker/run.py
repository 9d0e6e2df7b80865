from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import uvicorn

from exam_worker.config import WorkerSettings, get_log_level, load_worker_settings
from exam_worker.errors import ConfigError
from exam_worker.main import create_app
from exam_worker.services.batch_scheduler import BatchScheduler
from exam_worker.services.cloud_api_client import CloudApiClient
from exam_worker.services.gemini_client import create_gemini_http_client
from exam_worker.services.image_payload import ImagePayloadResolver
from exam_worker.services.key_pool import KeyPool
from exam_worker.services.local_io import InMemoryWorkSource, JsonDirectoryResultSink, work_items_from_paths
from exam_worker.services.question_analyzer import QuestionAnalyzer

logger = logging.getLogger("exam_worker")

_LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(threadName)s] %(name)s: %(message)s"


def _add_global_arguments(parser: argparse.ArgumentParser, *, inherited: bool = False) -> None:
    """Flags accepted both before and after the subcommand name.

    The subcommand copies default to SUPPRESS so they never overwrite a value
    given before the subcommand.
    """

    def _default(value=None):
        return argparse.SUPPRESS if inherited else value

    parser.add_argument(
        "--keys-file", default=_default(), help="Line-oriented API key list (default: KEYS_FILE or keys.txt)"
    )
    parser.add_argument("--batch-size", type=int, default=_default(), help="Items pulled per round")
    parser.add_argument("--concurrency", type=int, default=_default(), help="Tasks per window")
    parser.add_argument("--model", dest="analysis_model", default=_default(), help="Model used for analysis calls")
    parser.add_argument("--detection-model", default=_default(), help="Model used for detection calls")
    parser.add_argument(
        "--no-stream", dest="stream", action="store_const", const=False, default=_default(), help="Disable streaming"
    )
    parser.add_argument("--log-level", default=_default(), help="Logging level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--status-host", default=_default("127.0.0.1"), help="Status API bind address")
    parser.add_argument(
        "--status-port", type=int, default=_default(), help="Serve /health, /key-stats and /rounds on this port"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="exam-worker",
        description="Detect and analyze exam questions with a rotating pool of Gemini API keys.",
    )
    _add_global_arguments(parser)

    subparsers = parser.add_subparsers(dest="command")
    run_parser = subparsers.add_parser("run", help="Analyze pending questions from the cloud API (default)")
    _add_global_arguments(run_parser, inherited=True)
    run_parser.add_argument("--max-rounds", type=int, help="Stop after this many rounds with work")

    detect_parser = subparsers.add_parser("detect", help="Detect questions on local page images")
    _add_global_arguments(detect_parser, inherited=True)
    detect_parser.add_argument("images", nargs="+", help="Page image files")
    detect_parser.add_argument("--out", default="detections", help="Directory for <name>.json results")
    return parser


def _configure_logging(level_name: str) -> None:
    level = logging.getLevelName(level_name.upper())
    logging.basicConfig(level=level if isinstance(level, int) else logging.INFO, format=_LOG_FORMAT)
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _build_key_pool(settings: WorkerSettings) -> KeyPool:
    kwargs = {"initial_delay_ms": settings.initial_delay_ms, "max_delay_ms": settings.max_delay_ms}
    if settings.inline_keys:
        return KeyPool.from_text(settings.inline_keys, **kwargs)
    return KeyPool.from_file(settings.keys_file, **kwargs)


def _install_signal_handlers(scheduler: BatchScheduler) -> dict:
    def _handle_signal(sig, frame):
        del frame
        signal_name = signal.Signals(sig).name
        if scheduler.stopping:
            logger.warning("Received %s again, cancelling in-flight calls", signal_name)
            scheduler.cancel()
        else:
            logger.info("Received %s, shutting down after the current window", signal_name)
            scheduler.request_stop()

    previous = {}
    if threading.current_thread() is not threading.main_thread():
        return previous
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handle_signal)
    return previous


def _restore_signal_handlers(previous: dict) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _start_status_server(*, key_pool: KeyPool, scheduler: BatchScheduler, host: str, port: int) -> threading.Thread:
    app = create_app(key_pool=key_pool, scheduler=scheduler)
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="status-api", daemon=True)
    thread.start()
    logger.info("Status API listening | url=http://%s:%d", host, port)
    return thread


def _build_scheduler(settings: WorkerSettings, **kwargs) -> BatchScheduler:
    return BatchScheduler(
        batch_size=settings.batch_size,
        concurrency=settings.concurrency,
        round_delay_seconds=settings.round_delay_seconds,
        idle_delay_seconds=settings.idle_delay_seconds,
        error_delay_seconds=settings.error_delay_seconds,
        logger=logger,
        **kwargs,
    )


def _run_worker(args: argparse.Namespace, settings: WorkerSettings, key_pool: KeyPool) -> int:
    logger.info(
        "Starting analysis worker | api=%s | keys=%d | model=%s | batch_size=%d | concurrency=%d",
        settings.api_base_url,
        len(key_pool),
        settings.analysis_model,
        settings.batch_size,
        settings.concurrency,
    )
    with (
        create_gemini_http_client(timeout_seconds=settings.gemini_timeout_ms / 1000) as http_client,
        CloudApiClient(
            base_url=settings.api_base_url,
            timeout_seconds=settings.request_timeout_ms / 1000,
            logger=logger,
        ) as cloud,
    ):
        analyzer = QuestionAnalyzer(
            key_pool=key_pool,
            http_client=http_client,
            resolve_payload=ImagePayloadResolver(http_client=http_client, cdn_url=settings.cdn_url, logger=logger),
            settings=settings,
            stats_sink=cloud,
            logger=logger,
        )
        scheduler = _build_scheduler(
            settings,
            work_source=cloud,
            result_sink=cloud,
            process_item=analyzer.process_analysis,
        )
        previous_handlers = _install_signal_handlers(scheduler)
        try:
            if args.status_port:
                _start_status_server(
                    key_pool=key_pool, scheduler=scheduler, host=args.status_host, port=args.status_port
                )
            scheduler.run(max_rounds=getattr(args, "max_rounds", None))
        finally:
            _restore_signal_handlers(previous_handlers)
    return 0


def _run_detect(args: argparse.Namespace, settings: WorkerSettings, key_pool: KeyPool) -> int:
    items = work_items_from_paths(args.images)
    sink = JsonDirectoryResultSink(args.out, logger=logger)
    logger.info("Detecting questions | pages=%d | keys=%d | out=%s", len(items), len(key_pool), sink.directory)
    with create_gemini_http_client(timeout_seconds=settings.gemini_timeout_ms / 1000) as http_client:
        analyzer = QuestionAnalyzer(
            key_pool=key_pool,
            http_client=http_client,
            resolve_payload=ImagePayloadResolver(http_client=http_client, cdn_url=settings.cdn_url, logger=logger),
            settings=settings,
            logger=logger,
        )
        scheduler = _build_scheduler(
            settings,
            work_source=InMemoryWorkSource(items),
            result_sink=sink,
            process_item=analyzer.process_detection,
            max_requeues=settings.detect_max_requeues,
        )
        previous_handlers = _install_signal_handlers(scheduler)
        try:
            if args.status_port:
                _start_status_server(
                    key_pool=key_pool, scheduler=scheduler, host=args.status_host, port=args.status_port
                )
            scheduler.run(stop_when_drained=True)
        finally:
            _restore_signal_handlers(previous_handlers)

    missing = [item.id for item in items if not sink.path_for(item).exists()]
    if missing:
        logger.error("Detection incomplete | failed_pages=%s", ", ".join(missing))
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    _configure_logging(args.log_level or get_log_level())

    try:
        settings = load_worker_settings(
            keys_file=args.keys_file,
            batch_size=args.batch_size,
            concurrency=args.concurrency,
            analysis_model=args.analysis_model,
            detection_model=args.detection_model,
            stream=args.stream,
        )
        key_pool = _build_key_pool(settings)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    if args.command == "detect":
        return _run_detect(args, settings, key_pool)
    return _run_worker(args, settings, key_pool)


if __name__ == "__main__":
    sys.exit(main())
