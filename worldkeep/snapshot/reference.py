"""Backup reference model."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

REF_PREFIX = "saves"
NAME_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


class SnapshotKind(str, Enum):
    MANUAL = "manual"
    PERIODIC = "periodic"
    TEMP = "temp"


def reference_name(kind, when):
    """Branch name for a new backup: saves/<kind>/<YYYYMMDD-HHMMSS>."""
    kind = SnapshotKind(kind)
    return f"{REF_PREFIX}/{kind.value}/{when.strftime(NAME_TIMESTAMP_FORMAT)}"


def kind_filter(kind):
    """Backend filter matching every backup of one kind."""
    return f"{REF_PREFIX}/{SnapshotKind(kind).value}/*"


@dataclass(frozen=True)
class SnapshotReference:
    """A named backup in the store. The kind is encoded in the name."""

    name: str
    content_id: str = ""
    subject: str = ""
    created_at: datetime | None = None
    created_at_relative: str = ""
    is_active: bool = False

    @property
    def kind(self):
        parts = self.name.split("/")
        if len(parts) >= 3 and parts[0] == REF_PREFIX:
            try:
                return SnapshotKind(parts[1])
            except ValueError:
                return None
        return None

    def __str__(self):
        active = "*" if self.is_active else " "
        return f"{active} {self.name} {self.content_id} {self.subject} ({self.created_at_relative})"
