import json
import logging
import os
import uuid
from datetime import datetime, timezone

from config import Settings
from database import db
from models import Job, JobState

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_job(kind: str, owner_id: str) -> Job:
    job = Job(id=uuid.uuid4().hex, kind=kind, owner_id=owner_id)
    now = _now()
    with db() as conn:
        conn.execute(
            """
            INSERT INTO jobs (id, kind, owner_id, state, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job.id, kind, owner_id, job.state.value, now, now),
        )
    logger.info(f"Job {job.id} received ({kind}) for owner {owner_id}")
    return job


def save_state(job: Job, output_name: str | None = None) -> None:
    """Persist the job's current state, error and warnings."""
    now = _now()
    finished_at = now if job.state.is_terminal else None
    with db() as conn:
        conn.execute(
            """
            UPDATE jobs SET state=?, error_kind=?, error_msg=?, warnings=?,
                output_name=COALESCE(?, output_name), updated_at=?, finished_at=?
            WHERE id=?
            """,
            (
                job.state.value,
                job.error_kind,
                job.error_msg,
                json.dumps(job.warnings) if job.warnings else None,
                output_name,
                now,
                finished_at,
                job.id,
            ),
        )


def get_job(job_id: str) -> dict | None:
    with db() as conn:
        row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    if not row:
        return None
    return {
        "id": row["id"],
        "kind": row["kind"],
        "owner_id": row["owner_id"],
        "state": row["state"],
        "error_kind": row["error_kind"],
        "error_msg": row["error_msg"],
        "warnings": json.loads(row["warnings"]) if row["warnings"] else [],
        "output_name": row["output_name"],
        "created_at": row["created_at"],
        "finished_at": row["finished_at"],
    }


def recover_interrupted_jobs(settings: Settings) -> None:
    """Fail jobs a previous crash/restart left mid-flight and clear staged files.

    Called during startup before any request is served, so every non-terminal
    job found here belongs to a dead process.
    """
    terminal = (JobState.COMPLETED.value, JobState.FAILED.value)
    with db() as conn:
        stuck = conn.execute(
            "SELECT id FROM jobs WHERE state NOT IN (?, ?)", terminal
        ).fetchall()
        now = _now()
        for row in stuck:
            conn.execute(
                """
                UPDATE jobs SET state=?, error_kind='Interrupted',
                    error_msg='service restarted while the job was running',
                    updated_at=?, finished_at=?
                WHERE id=?
                """,
                (JobState.FAILED.value, now, now, row["id"]),
            )
    if stuck:
        logger.warning(f"Marked {len(stuck)} interrupted job(s) as failed on startup")
    else:
        logger.info("No interrupted jobs found on startup")

    removed = 0
    if os.path.isdir(settings.tmp_dir):
        for name in os.listdir(settings.tmp_dir):
            path = os.path.join(settings.tmp_dir, name)
            if os.path.isfile(path):
                os.unlink(path)
                removed += 1
    if removed:
        logger.warning(f"Removed {removed} orphaned staged file(s) from {settings.tmp_dir}")
