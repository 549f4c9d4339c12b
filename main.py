import logging

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session

from database import SessionLocal
from recurrence import StorageUnavailable
from scheduler import RunInProgress, SchedulerManager, run_for_user
from schemas import RunResultOut
from services import ObligationService


app = FastAPI(title="Recurring Catch-up")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/users/{user_id}/obligations/process", response_model=RunResultOut)
def process_obligations(user_id: int):
    try:
        result = run_for_user(user_id)
    except RunInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StorageUnavailable as exc:
        logging.exception("Catch-up run failed before any obligation was read")
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return RunResultOut.model_validate(result)


@app.get("/users/{user_id}/obligations/stats")
def obligation_stats(user_id: int, db: Session = Depends(get_db)):
    return ObligationService(db, user_id).statistics()
