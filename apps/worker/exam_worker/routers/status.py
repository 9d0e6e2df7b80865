from fastapi import APIRouter, HTTPException, Request, status

from exam_worker.schemas.status import KeyStatsItem, KeyStatsResponse, RoundsResponse, RoundSummaryItem

router = APIRouter(tags=["status"])


def _key_stats_response(key_pool) -> KeyStatsResponse:
    items = [
        KeyStatsItem(
            masked_key=stats.masked_key,
            backoff_ms=stats.backoff_ms,
            call_count=stats.call_count,
            success_count=stats.success_count,
            failure_count=stats.failure_count,
            success_rate=stats.success_rate,
        )
        for stats in key_pool.stats()
    ]
    return KeyStatsResponse(
        keys=items,
        total_calls=sum(item.call_count for item in items),
        total_success=sum(item.success_count for item in items),
        total_failure=sum(item.failure_count for item in items),
    )


@router.get("/key-stats", response_model=KeyStatsResponse)
def get_key_stats(request: Request) -> KeyStatsResponse:
    return _key_stats_response(request.app.state.key_pool)


@router.post("/key-stats/reset", response_model=KeyStatsResponse)
def reset_key_stats(request: Request) -> KeyStatsResponse:
    """Zero the call counters; backoff state is left alone."""
    key_pool = request.app.state.key_pool
    key_pool.reset_stats()
    return _key_stats_response(key_pool)


@router.get("/rounds", response_model=RoundsResponse)
def list_rounds(request: Request, limit: int = 20) -> RoundsResponse:
    if limit <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="limit must be positive")
    scheduler = request.app.state.scheduler
    summaries = scheduler.recent_summaries() if scheduler is not None else []
    return RoundsResponse(
        items=[
            RoundSummaryItem(
                round_no=summary.round_no,
                processed=summary.processed,
                successful=summary.successful,
                failed=summary.failed,
                cancelled=summary.cancelled,
                retry_count=summary.retry_count,
                finished_at=summary.finished_at,
            )
            for summary in reversed(summaries[-limit:])
        ]
    )
