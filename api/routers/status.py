from fastapi import APIRouter

from errors import NotFoundError
from jobs import get_job

router = APIRouter()


@router.get("/jobs/{job_id}")
def get_job_status(job_id: str):
    """Single job record, including the error kind of a failed job."""
    job = get_job(job_id)
    if not job:
        raise NotFoundError("Job not found")
    return job
