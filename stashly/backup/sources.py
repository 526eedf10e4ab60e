"""
PostgreSQL source for backup operations.

Discovers the databases on a server with ``psql -l -t`` and dumps each one
with ``pg_dump`` into a staging directory, one ``<name>.sql`` per database.
"""

import os
import logging
import subprocess
from pathlib import Path
from urllib.parse import quote
from typing import Callable, Iterable, List, Optional

from stashly import constants
from stashly.config import PostgresConfig


logger = logging.getLogger(__name__)


class EnumerationError(Exception):
    """Raised when the database listing cannot be obtained."""
    pass


class PerDatabaseDumpError(Exception):
    """Raised when dumping a single database fails. Recoverable."""

    def __init__(self, database: str, message: str):
        super().__init__(f"Error dumping database {database}: {message}")
        self.database = database


class NoDatabasesDumpedError(Exception):
    """Raised when not a single database could be dumped."""
    pass


def is_excluded(name: str, exclude: Iterable[str] = ()) -> bool:
    """
    Check whether a database must never be dumped.

    Template databases, the server's administrative databases and any
    configured exclusion are skipped.
    """
    return (
        name.startswith(constants.TEMPLATE_PREFIX)
        or name in constants.SYSTEM_DATABASES
        or name in exclude
    )


def parse_database_listing(output: str, exclude: Iterable[str] = ()) -> List[str]:
    """
    Parse ``psql -l -t`` output into database names.

    Each row is ``|``-delimited; the first field, trimmed, is the name.
    Continuation rows (ACL lines) have an empty first field and are skipped.

    Args:
        output: Raw listing text
        exclude: Additional database names to skip

    Returns:
        Database names in listing order, without duplicates or excluded names
    """
    exclude = set(exclude)
    databases = []

    for line in output.splitlines():
        name = line.split('|', 1)[0].strip()
        if not name or is_excluded(name, exclude) or name in databases:
            continue
        databases.append(name)

    return databases


def dump_filename(database: str) -> str:
    """
    File name used for a database dump inside the staging directory.

    Names are percent-encoded, so distinct databases never share a file.
    """
    safe_name = quote(database, safe='')
    return f"{safe_name}.sql"


class PostgresSource:
    """
    Handler for a PostgreSQL server source.

    The connection profile is handed to the client tools through libpq
    environment variables of the child process only.
    """

    def __init__(self, postgres: PostgresConfig, exclude_databases: Optional[Iterable[str]] = None):
        """
        Initialize PostgreSQL source handler.

        Args:
            postgres: Connection profile (host, port, user, password)
            exclude_databases: Database names to skip besides the built-in exclusions
        """
        self.postgres = postgres
        self.exclude_databases = list(exclude_databases or [])

    def _env(self) -> dict:
        env = dict(os.environ)
        env.update(self.postgres.to_env())
        return env

    def list_databases(self, timeout: Optional[float] = None) -> List[str]:
        """
        List dumpable databases on the server.

        Args:
            timeout: Seconds to wait for psql (None = no limit)

        Returns:
            Database names, excluded names removed

        Raises:
            EnumerationError: If psql cannot run, times out or exits non-zero
        """
        try:
            result = subprocess.run(
                ['psql', '-l', '-t'],
                env=self._env(),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=True
            )
        except FileNotFoundError:
            raise EnumerationError("psql executable not found in PATH")
        except subprocess.TimeoutExpired:
            raise EnumerationError(f"Timed out listing databases after {timeout}s")
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or '').strip()
            raise EnumerationError(
                f"Error getting list of databases (exit {e.returncode}): {stderr}"
            )
        except OSError as e:
            raise EnumerationError(f"Failed to run psql: {e}")

        databases = parse_database_listing(result.stdout, self.exclude_databases)
        logger.info(f"Found {len(databases)} databases to back up: {', '.join(databases)}")
        return databases

    def dump_database(self, database: str, staging_dir: str, timeout: Optional[float] = None) -> str:
        """
        Dump one database to ``<staging_dir>/<database>.sql``.

        Args:
            database: Database name
            staging_dir: Existing, writable staging directory
            timeout: Seconds to wait for pg_dump (None = no limit)

        Returns:
            Path of the dump file

        Raises:
            PerDatabaseDumpError: If pg_dump fails for this database
        """
        output_path = Path(staging_dir) / dump_filename(database)

        try:
            subprocess.run(
                [
                    'pg_dump',
                    '--no-owner',
                    '--no-acl',
                    f'--dbname={database}',
                    f'--file={output_path}'
                ],
                env=self._env(),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=True
            )
        except FileNotFoundError:
            raise PerDatabaseDumpError(database, "pg_dump executable not found in PATH")
        except subprocess.TimeoutExpired:
            self._discard(output_path)
            raise PerDatabaseDumpError(database, f"timed out after {timeout}s")
        except subprocess.CalledProcessError as e:
            self._discard(output_path)
            stderr = (e.stderr or '').strip()
            raise PerDatabaseDumpError(database, f"exit {e.returncode}: {stderr}")
        except OSError as e:
            self._discard(output_path)
            raise PerDatabaseDumpError(database, str(e))

        return str(output_path)

    def dump_databases(
        self,
        databases: List[str],
        staging_dir: str,
        cancellation_check: Optional[Callable[[], None]] = None,
        time_remaining: Optional[Callable[[], Optional[float]]] = None
    ) -> List[str]:
        """
        Dump every database sequentially, skipping the ones that fail.

        Args:
            databases: Database names in dump order
            staging_dir: Existing, writable staging directory
            cancellation_check: Called before each database; raises to abort
            time_remaining: Returns seconds left in the run (None = unlimited)

        Returns:
            Names of databases dumped successfully

        Raises:
            NoDatabasesDumpedError: If no database could be dumped
        """
        dumped = []

        for database in databases:
            if cancellation_check:
                cancellation_check()

            logger.info(f"Processing database: {database}")
            timeout = time_remaining() if time_remaining else None

            try:
                self.dump_database(database, staging_dir, timeout=timeout)
            except PerDatabaseDumpError as e:
                logger.warning(str(e))
                continue

            dumped.append(database)
            logger.info(f"Successfully dumped database: {database}")

        logger.info(f"Exported {len(dumped)} of {len(databases)} databases")

        if not dumped:
            raise NoDatabasesDumpedError("No databases to export: every dump failed or none were found")

        return dumped

    @staticmethod
    def _discard(path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove partial dump {path}: {e}")
