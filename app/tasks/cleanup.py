from app.celery_app import celery_app
from app.db import SessionLocal
from app.services.cleanup import cleanup_job


@celery_app.task(name="app.tasks.cleanup.run_cleanup")
def run_cleanup() -> dict | None:
    session = SessionLocal()
    try:
        return cleanup_job.run(session, trigger="scheduled")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
