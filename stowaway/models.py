from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional


@dataclass(repr=False)
class BackupJob:
    """Backup job configuration"""

    name: str
    description: Optional[str] = None
    databases: List[Any] = field(default_factory=list)  # PostgreSQL / MySQL
    archives: List[Any] = field(default_factory=list)  # Archive
    compressor: Optional[Any] = None  # Compressor applied to dumps and archives
    encryptor: Optional[Any] = None  # Encryptor applied to the final package
    storages: List[Any] = field(default_factory=list)  # CloudStorage / SFTPStorage
    syncers: List[Any] = field(default_factory=list)  # CloudSyncer
    retention_days: Optional[int] = None  # Days to keep packages in cloud storages (null = keep)

    def __repr__(self):
        return (
            f'<BackupJob {self.name} databases={len(self.databases)} '
            f'archives={len(self.archives)} storages={len(self.storages)} '
            f'syncers={len(self.syncers)}>'
        )


@dataclass(repr=False)
class BackupHistory:
    """Backup execution history and logs"""

    job_name: str
    status: str  # running, success, failed
    started_at: datetime
    completed_at: Optional[datetime] = None
    file_size_bytes: Optional[int] = None
    package_name: Optional[str] = None
    stored_paths: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    logs: Optional[str] = None  # Detailed execution logs

    def __repr__(self):
        return f'<BackupHistory job={self.job_name} status={self.status}>'
