"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Recreate the staging directory
2. List databases on the server
3. Dump each database (failures skipped)
4. Create zip archive of the staging directory
5. Encrypt the archive (if configured)
6. Upload to storage
7. Notify success or failure
8. Enforce retention (after a successful upload only)
9. Cleanup temporary files

Only one run may be active at a time; see RunLock.
"""

import os
import time
import fcntl
import shutil
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from stashly import constants
from stashly.models import BackupRun
from stashly.notifiers import Notifier
from .sources import PostgresSource
from .compression import archive_directory, get_archive_size
from .encryption import GPGEncryptor
from .storage import Storage, StorageError, create_storage
from .retention import RetentionManager


logger = logging.getLogger(__name__)

LOCK_FILE_NAME = 'stashly.lock'


class RunInProgressError(Exception):
    """Raised when a backup run is requested while another one is active."""
    pass


class BackupCancelledError(Exception):
    """Raised when a run is cancelled or exceeds its timeout."""
    pass


class RunLock:
    """
    Single-run lock shared by threads of this process and, through an
    advisory file lock, by other processes using the same work directory.
    """

    _registry_lock = threading.Lock()
    _thread_locks: Dict[str, threading.Lock] = {}

    def __init__(self, lock_path: str):
        self.lock_path = os.path.abspath(lock_path)
        with self._registry_lock:
            self._thread_lock = self._thread_locks.setdefault(self.lock_path, threading.Lock())
        self._fd = None

    def acquire(self) -> bool:
        """Try to take the lock without blocking. Returns True on success."""
        if not self._thread_lock.acquire(blocking=False):
            return False

        try:
            os.makedirs(os.path.dirname(self.lock_path), exist_ok=True)
            self._fd = open(self.lock_path, 'w')
            fcntl.flock(self._fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            self._close()
            self._thread_lock.release()
            return False
        except OSError:
            self._close()
            self._thread_lock.release()
            raise

        return True

    def release(self):
        if self._fd is not None:
            fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
            self._close()
            self._thread_lock.release()

    def _close(self):
        if self._fd is not None:
            self._fd.close()
            self._fd = None

    def __enter__(self):
        if not self.acquire():
            raise RunInProgressError(f"Another backup run holds {self.lock_path}")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one PostgreSQL server.
    """

    def __init__(
        self,
        config,
        storage: Optional[Storage] = None,
        notifier: Optional[Notifier] = None,
        source: Optional[PostgresSource] = None,
        encryptor: Optional[GPGEncryptor] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize backup executor.

        Args:
            config: Config instance
            storage: Storage backend (default: built from config)
            notifier: Notifier (default: built from config)
            source: PostgreSQL source (default: built from config)
            encryptor: Encryptor used when backup.encrypt is set (default: built from config)
            cancel_event: Set from another thread to cancel the run; cleared when the run ends
        """
        self.config = config
        self.storage = storage or create_storage(config)
        self.notifier = notifier or Notifier.from_config(config)
        self.source = source or PostgresSource(config.postgres, config.backup.exclude_databases)
        self.encryptor = encryptor
        self.cancel_event = cancel_event or threading.Event()

        work_dir = config.backup.work_dir
        self.staging_dir = config.backup.staging_dir
        self.archive_path = os.path.join(work_dir, f"{constants.EXPORT_DIR}.zip")
        self.lock_path = os.path.join(work_dir, LOCK_FILE_NAME)

        self.run: Optional[BackupRun] = None
        self._deadline: Optional[float] = None
        self._storage_ready = False

    def execute(self) -> BackupRun:
        """
        Execute one backup run.

        Backup failures are reported through the notifier and recorded on the
        returned BackupRun; they are not raised.

        Returns:
            BackupRun with execution results

        Raises:
            RunInProgressError: If another run is active
        """
        lock = RunLock(self.lock_path)
        try:
            acquired = lock.acquire()
        except OSError as e:
            return self._fail_run(f"Failed to create run lock {self.lock_path}: {e}")

        if not acquired:
            raise RunInProgressError(f"Another backup run holds {self.lock_path}")

        try:
            return self._execute_locked()
        finally:
            lock.release()

    def _fail_run(self, error: str) -> BackupRun:
        """Record and notify a run that failed before the workflow started."""
        self.run = BackupRun(staging_dir=self.staging_dir, status='failed', error_message=error)
        self._log(f"Backup failed: {error}", level=logging.ERROR)
        self.run.completed_at = datetime.utcnow()
        self.notifier.notify_backup_failure(error)
        return self.run

    def _execute_locked(self) -> BackupRun:
        self.run = BackupRun(staging_dir=self.staging_dir)
        self._deadline = None
        if self.config.backup.timeout:
            self._deadline = time.monotonic() + self.config.backup.timeout

        self._log(f"Starting backup for instance {self.config.app.instance_id}")

        try:
            self._execute_workflow()

            self.run.status = 'success'
            self._log("Backup completed successfully")

        except Exception as e:
            self.run.status = 'failed'
            self.run.error_message = str(e)
            self._log(f"Backup failed: {e}", level=logging.ERROR)

        finally:
            self._cleanup()
            self.run.completed_at = datetime.utcnow()
            # A cancel request applies to the run in progress only
            self.cancel_event.clear()

        if self.run.status == 'failed':
            self.notifier.notify_backup_failure(self.run.error_message)
            return self.run

        self.notifier.notify_backup_success(self.run.database_count, self.run.key)

        try:
            self.run.purged_keys = self._purge()
        except Exception as e:
            self.run.purge_error = str(e)
            self._log(f"Error purging dumps: {e}", level=logging.ERROR)
            self.notifier.notify_purge_failure(e)

        return self.run

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Fresh staging directory
        self._prepare_staging_dir()
        self._log(f"Staging directory: {self.staging_dir}")

        # Step 2: Discover databases
        self.run.databases_attempted = self.source.list_databases(timeout=self._time_remaining())
        self._log(f"Found {len(self.run.databases_attempted)} databases")

        # Step 3: Dump databases
        self.run.databases_dumped = self.source.dump_databases(
            self.run.databases_attempted,
            self.staging_dir,
            cancellation_check=self._check_cancelled,
            time_remaining=self._time_remaining
        )
        self._log(f"Dumped {self.run.database_count} of {len(self.run.databases_attempted)} databases")

        # Step 4: Archive
        self._check_cancelled()
        self.run.archive_path = archive_directory(self.staging_dir, self.archive_path)
        self.run.upload_path = self.run.archive_path
        self.run.file_size_bytes = get_archive_size(self.run.archive_path)
        self._log(
            f"Archive created: {os.path.basename(self.run.archive_path)} "
            f"({self.run.file_size_bytes / 1024 / 1024:.2f} MB)"
        )

        # Step 5: Encrypt (if configured)
        if self.config.backup.encrypt:
            self._check_cancelled()
            self._log("Encrypting archive")
            self.run.upload_path = self._get_encryptor().encrypt_file(self.run.archive_path)
        else:
            self._log("Encryption not configured, skipping")

        # Step 6: Upload
        self._check_cancelled()
        self._init_storage()
        self._log(f"Uploading to {self.storage.name()}")
        self.run.key = self.storage.upload(self.run.upload_path, cancellation_check=self._check_cancelled)
        self._log(f"Backup uploaded at {self.run.key}")

    def _get_encryptor(self) -> GPGEncryptor:
        if self.encryptor is None:
            gpg_config = self.config.encryption.gpg
            self.encryptor = GPGEncryptor(
                key_server=gpg_config.key_server,
                key_id=gpg_config.key_id,
                gnupg_home=os.path.join(self.config.backup.work_dir, 'gnupg')
            )
        return self.encryptor

    def _init_storage(self):
        if not self._storage_ready:
            self.storage.init()
            self._storage_ready = True

    def _retention(self) -> RetentionManager:
        return RetentionManager(self.storage, self.config.backup.retention_count)

    def _purge(self) -> List[str]:
        self._init_storage()
        deleted = self._retention().purge()
        if self.run is not None and deleted:
            self._log(f"Purged {len(deleted)} old backups")
        return deleted

    def purge(self) -> List[str]:
        """
        Run the retention pass on its own.

        A storage failure is notified as a purge failure and re-raised.

        Returns:
            Deleted timestamp keys

        Raises:
            RunInProgressError: If a backup run is active
            StorageError: If listing or deleting fails
        """
        with RunLock(self.lock_path):
            try:
                return self._purge()
            except StorageError as e:
                logger.error(f"Error purging dumps: {e}")
                self.notifier.notify_purge_failure(e)
                raise

    def list_backups(self) -> List[str]:
        """Stored backups as timestamp keys, newest first."""
        self._init_storage()
        return self._retention().list_backups()

    def cancel(self):
        """Request cancellation of the active run."""
        self.cancel_event.set()

    def _check_cancelled(self):
        if self.cancel_event.is_set():
            raise BackupCancelledError("Backup cancelled")
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise BackupCancelledError(
                f"Backup exceeded timeout of {self.config.backup.timeout}s"
            )

    def _time_remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def _prepare_staging_dir(self):
        """Remove leftovers from a previous run and create an empty staging directory."""
        self._remove_artifacts()
        os.makedirs(self.staging_dir, exist_ok=True)

    def _remove_artifacts(self):
        if os.path.exists(self.staging_dir):
            shutil.rmtree(self.staging_dir)
        for path in (self.archive_path, f"{self.archive_path}.gpg"):
            if os.path.exists(path):
                os.remove(path)

    def _cleanup(self):
        """Remove staging directory and intermediate files."""
        try:
            self._remove_artifacts()
            self._log("Cleaned up temporary files")
        except OSError as e:
            self._log(f"Warning: Failed to cleanup temporary files: {e}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run and the application log.

        Args:
            message: Log message
            level: logging level
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        if self.run is not None:
            self.run.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup(config, cancel_event: Optional[threading.Event] = None) -> BackupRun:
    """
    Execute a backup run for the configured server.

    Args:
        config: Config instance
        cancel_event: Optional event to cancel the run from another thread

    Returns:
        BackupRun with execution results

    Raises:
        RunInProgressError: If another run is active
    """
    executor = BackupExecutor(config, cancel_event=cancel_event)
    return executor.execute()
