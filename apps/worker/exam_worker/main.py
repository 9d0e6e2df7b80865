from fastapi import FastAPI

from exam_worker.routers import status_router
from exam_worker.services.batch_scheduler import BatchScheduler
from exam_worker.services.key_pool import KeyPool


def create_app(*, key_pool: KeyPool, scheduler: BatchScheduler | None = None) -> FastAPI:
    app = FastAPI(
        title="Exam Worker Status",
        description="Key rotation and round progress of the exam analysis worker",
        version="0.1.0",
    )
    app.state.key_pool = key_pool
    app.state.scheduler = scheduler

    app.include_router(status_router)

    @app.get("/health")
    def health_check():
        stopping = scheduler.stopping if scheduler is not None else False
        return {"status": "stopping" if stopping else "ok", "service": "exam-worker", "keys": len(key_pool)}

    return app
