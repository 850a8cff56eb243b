from database import db
from errors import NotFoundError, ValidationError


def lookup_username(owner_id: str | None) -> str:
    """Return the username of the owning account.

    Accounts are managed elsewhere; the pipeline only needs to know the
    account exists and what to credit as artist when a track carries no tag.
    """
    if not owner_id or not owner_id.strip():
        raise ValidationError("owner_id is required")
    with db() as conn:
        row = conn.execute("SELECT username FROM users WHERE id=?", (owner_id.strip(),)).fetchone()
    if not row:
        raise NotFoundError("User not found", details={"owner_id": owner_id})
    return row["username"]
