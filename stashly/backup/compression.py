"""
Archive creation for backup staging directories.

The staging directory is packaged into a single zip archive with every
regular file stored at its path relative to the directory, using forward
slashes regardless of the host OS.
"""

import os
import stat
import logging
import zipfile
from pathlib import Path


logger = logging.getLogger(__name__)


class ArchiveError(Exception):
    """Raised when archive creation fails."""
    pass


def archive_directory(directory: str, archive_path: str) -> str:
    """
    Create a zip archive of a directory.

    Non-regular files (symlinks, sockets, fifos) are skipped with a warning.
    A file that cannot be opened is logged and skipped so one broken dump
    does not block the rest. A read error after a file has started going
    into the archive is fatal.

    Args:
        directory: Directory to package
        archive_path: Path of the zip file to create (must be outside directory)

    Returns:
        Path to the created archive file

    Raises:
        ArchiveError: If the directory is missing or the archive file cannot be written
    """
    source = Path(directory)
    if not source.is_dir():
        raise ArchiveError(f"Directory does not exist: {directory}")

    added = 0

    try:
        with zipfile.ZipFile(archive_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            for root, dirs, files in os.walk(source):
                dirs.sort()
                for name in sorted(files):
                    item = Path(root) / name
                    if _add_file(zipf, item, source):
                        added += 1
    except (OSError, zipfile.BadZipFile, ArchiveError) as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                logger.warning(f"Failed to remove partial archive {archive_path}")
        if isinstance(e, ArchiveError):
            raise
        raise ArchiveError(f"Failed to create archive {archive_path}: {e}")

    logger.info(f"Created archive '{archive_path}' for directory '{directory}' ({added} files)")
    return archive_path


def _add_file(zipf: zipfile.ZipFile, item: Path, base: Path) -> bool:
    """
    Add one file to the archive.

    Returns:
        True if the file was added, False if it was skipped
    """
    try:
        mode = item.lstat().st_mode
    except OSError as e:
        logger.error(f"Failed to get file info for {item}: {e}")
        return False

    if not stat.S_ISREG(mode):
        logger.warning(f"{item} is not a regular file, skipping")
        return False

    arcname = item.relative_to(base).as_posix()

    try:
        info = zipfile.ZipInfo.from_file(item, arcname)
        src = open(item, 'rb')
    except OSError as e:
        logger.error(f"Failed to open {item}: {e}")
        return False

    info.compress_type = zipfile.ZIP_DEFLATED

    # Once the entry is open it cannot be dropped, so a read error here
    # fails the whole archive rather than shipping a truncated dump
    with src, zipf.open(info, 'w') as dest:
        while True:
            try:
                chunk = src.read(1024 * 1024)
            except OSError as e:
                raise ArchiveError(f"Failed to read {item} while archiving: {e}")
            if not chunk:
                break
            dest.write(chunk)

    return True


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise ArchiveError(f"Failed to get archive size: {e}")
