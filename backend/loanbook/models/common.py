"""Column helpers and the shared soft-delete lifecycle enum."""

import enum
import uuid
from datetime import datetime, timezone


class RecordStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
