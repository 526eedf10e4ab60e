from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class BackupRun:
    """One backup execution; lives only until its notification is sent."""
    staging_dir: str
    status: str = 'running'  # running, success, failed
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    databases_attempted: List[str] = field(default_factory=list)
    databases_dumped: List[str] = field(default_factory=list)
    archive_path: Optional[str] = None
    upload_path: Optional[str] = None
    file_size_bytes: Optional[int] = None
    key: Optional[str] = None
    error_message: Optional[str] = None
    purge_error: Optional[str] = None
    purged_keys: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def database_count(self) -> int:
        return len(self.databases_dumped)

    def __repr__(self):
        return f'<BackupRun status={self.status} databases={self.database_count} key={self.key}>'


@dataclass(frozen=True)
class BackupSucceeded:
    database_count: int
    key: str


@dataclass(frozen=True)
class BackupFailed:
    error: str


@dataclass(frozen=True)
class PurgeFailed:
    error: str
