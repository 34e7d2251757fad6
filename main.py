import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session

from database import SessionLocal
from ledger import LedgerStore
from recurrence import local_now
from scheduler import SchedulerManager
from schemas import DeadLetterOut, RecurringTask

logger = logging.getLogger(__name__)

app = FastAPI(title="Recurring Ledger Scheduler")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager: Optional[SchedulerManager] = None


def get_scheduler() -> SchedulerManager:
    global scheduler_manager
    if scheduler_manager is None:
        scheduler_manager = SchedulerManager()
    return scheduler_manager


@app.on_event("startup")
def startup_event():
    get_scheduler().start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


@app.get("/healthz")
def healthz(manager: SchedulerManager = Depends(get_scheduler)):
    return {
        "status": "ok",
        "version": APP_VERSION,
        "scheduler_running": manager.scheduler.running,
    }


@app.get("/dead-letters", response_model=list[DeadLetterOut])
def list_dead_letters(limit: int = 200, db: Session = Depends(get_db)):
    return LedgerStore(db).unresolved_dead_letters(limit=limit)


@app.post("/dead-letters/{dead_letter_id}/requeue", response_model=DeadLetterOut)
def requeue_dead_letter(
    dead_letter_id: int,
    db: Session = Depends(get_db),
    manager: SchedulerManager = Depends(get_scheduler),
):
    store = LedgerStore(db)
    try:
        entry = store.resolve_dead_letter(dead_letter_id, local_now())
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if entry.source != "recurring":
        db.rollback()
        raise HTTPException(
            status_code=400, detail="Only recurring tasks can be requeued"
        )
    task = RecurringTask.model_validate_json(entry.payload_json)
    db.commit()
    manager.queue.enqueue(RecurringTask(**task.model_dump(exclude={"attempt"})))
    logger.info(f"dead_letter_requeued: id={dead_letter_id} txn={task.transaction_id}")
    return entry


@app.post("/jobs/{job_id}/run")
def run_job(job_id: str, manager: SchedulerManager = Depends(get_scheduler)):
    if job_id not in manager.job_ids:
        raise HTTPException(status_code=404, detail="Unknown job")
    result = manager.run_job(job_id, source="api")
    return {"job_id": job_id, "result": str(result)}
