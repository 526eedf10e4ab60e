"""
Unit tests for the PostgreSQL source (stashly/backup/sources.py).

Tests database listing parsing, exclusions and pg_dump execution.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from stashly.config import PostgresConfig
from stashly.backup.sources import (
    PostgresSource,
    parse_database_listing,
    is_excluded,
    dump_filename,
    EnumerationError,
    PerDatabaseDumpError,
    NoDatabasesDumpedError
)


PSQL_LISTING = """\
 app        | postgres | UTF8     | en_US.UTF-8 | en_US.UTF-8 |
 billing    | postgres | UTF8     | en_US.UTF-8 | en_US.UTF-8 |
 defaultdb  | doadmin  | UTF8     | en_US.UTF-8 | en_US.UTF-8 |
 postgres   | postgres | UTF8     | en_US.UTF-8 | en_US.UTF-8 |
 template0  | postgres | UTF8     | en_US.UTF-8 | en_US.UTF-8 | =c/postgres          +
            |          |          |             |             | postgres=CTc/postgres
 template1  | postgres | UTF8     | en_US.UTF-8 | en_US.UTF-8 | =c/postgres          +
            |          |          |             |             | postgres=CTc/postgres

"""


def _completed(stdout=''):
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=stdout, stderr='')


class TestParseDatabaseListing:
    """Test parse_database_listing pure function."""

    def test_parse_listing_skips_system_and_template_databases(self):
        assert parse_database_listing(PSQL_LISTING) == ['app', 'billing']

    def test_parse_listing_with_configured_exclusions(self):
        assert parse_database_listing(PSQL_LISTING, exclude=['billing']) == ['app']

    def test_parse_listing_preserves_order(self):
        output = " zeta | u\n alpha | u\n mid | u\n"
        assert parse_database_listing(output) == ['zeta', 'alpha', 'mid']

    def test_parse_listing_empty_output(self):
        assert parse_database_listing('') == []
        assert parse_database_listing('\n\n   \n') == []

    def test_parse_listing_without_delimiter(self):
        assert parse_database_listing('  lonely  \n') == ['lonely']

    def test_parse_listing_removes_duplicates(self):
        assert parse_database_listing(" app | a\n app | b\n") == ['app']

    @pytest.mark.parametrize("name", ['postgres', 'defaultdb', 'template0', 'template1', 'template_custom'])
    def test_excluded_names_never_returned(self, name):
        output = f" {name} | owner\n keep | owner\n"
        result = parse_database_listing(output)
        assert name not in result
        assert result == ['keep']


class TestIsExcluded:

    def test_builtin_exclusions(self):
        assert is_excluded('postgres')
        assert is_excluded('defaultdb')
        assert is_excluded('template0')

    def test_configured_exclusion(self):
        assert is_excluded('scratch', exclude=['scratch'])
        assert not is_excluded('scratch')

    def test_regular_database_not_excluded(self):
        assert not is_excluded('app')


class TestPostgresSourceListDatabases:
    """Test listing through psql."""

    def setup_method(self):
        self.postgres = PostgresConfig(host='db.local', port=6543, user='backup', password='pw')

    @patch('stashly.backup.sources.subprocess.run')
    def test_list_databases_runs_psql_with_connection_env(self, mock_run):
        mock_run.return_value = _completed(PSQL_LISTING)

        source = PostgresSource(self.postgres)
        databases = source.list_databases()

        assert databases == ['app', 'billing']
        args, kwargs = mock_run.call_args
        assert args[0] == ['psql', '-l', '-t']
        assert kwargs['env']['PGHOST'] == 'db.local'
        assert kwargs['env']['PGPORT'] == '6543'
        assert kwargs['env']['PGUSER'] == 'backup'
        assert kwargs['env']['PGPASSWORD'] == 'pw'
        assert kwargs['check'] is True

    @patch('stashly.backup.sources.subprocess.run')
    def test_list_databases_applies_configured_exclusions(self, mock_run):
        mock_run.return_value = _completed(PSQL_LISTING)

        source = PostgresSource(self.postgres, exclude_databases=['app'])

        assert source.list_databases() == ['billing']

    @patch('stashly.backup.sources.subprocess.run')
    def test_list_databases_nonzero_exit(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(
            2, ['psql'], output='', stderr='could not connect to server'
        )

        source = PostgresSource(self.postgres)

        with pytest.raises(EnumerationError, match='could not connect'):
            source.list_databases()

    @patch('stashly.backup.sources.subprocess.run')
    def test_list_databases_missing_psql(self, mock_run):
        mock_run.side_effect = FileNotFoundError('psql')

        with pytest.raises(EnumerationError, match='not found'):
            PostgresSource(self.postgres).list_databases()

    @patch('stashly.backup.sources.subprocess.run')
    def test_list_databases_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(['psql'], 5)

        with pytest.raises(EnumerationError, match='Timed out'):
            PostgresSource(self.postgres).list_databases(timeout=5)


class TestPostgresSourceDump:
    """Test pg_dump execution."""

    def setup_method(self):
        self.postgres = PostgresConfig(host='db.local', user='backup', password='pw')

    @patch('stashly.backup.sources.subprocess.run')
    def test_dump_database_command_line(self, mock_run, tmp_path):
        mock_run.return_value = _completed()

        path = PostgresSource(self.postgres).dump_database('app', str(tmp_path))

        assert path == str(tmp_path / 'app.sql')
        args, kwargs = mock_run.call_args
        assert args[0] == [
            'pg_dump',
            '--no-owner',
            '--no-acl',
            '--dbname=app',
            f'--file={tmp_path / "app.sql"}'
        ]
        assert kwargs['env']['PGPASSWORD'] == 'pw'

    @patch('stashly.backup.sources.subprocess.run')
    def test_dump_database_failure_removes_partial_file(self, mock_run, tmp_path):
        partial = tmp_path / 'app.sql'

        def fail(*args, **kwargs):
            partial.write_text('-- partial')
            raise subprocess.CalledProcessError(1, args[0], output='', stderr='permission denied')

        mock_run.side_effect = fail

        with pytest.raises(PerDatabaseDumpError, match='permission denied') as exc_info:
            PostgresSource(self.postgres).dump_database('app', str(tmp_path))

        assert exc_info.value.database == 'app'
        assert not partial.exists()

    @patch('stashly.backup.sources.subprocess.run')
    def test_dump_databases_continues_after_failure(self, mock_run, tmp_path):
        def run(cmd, **kwargs):
            if '--dbname=broken' in cmd:
                raise subprocess.CalledProcessError(1, cmd, output='', stderr='boom')
            return _completed()

        mock_run.side_effect = run

        source = PostgresSource(self.postgres)
        dumped = source.dump_databases(['app', 'broken', 'billing'], str(tmp_path))

        assert dumped == ['app', 'billing']
        assert mock_run.call_count == 3

    @patch('stashly.backup.sources.subprocess.run')
    def test_dump_databases_all_fail(self, mock_run, tmp_path):
        mock_run.side_effect = subprocess.CalledProcessError(1, ['pg_dump'], output='', stderr='boom')

        with pytest.raises(NoDatabasesDumpedError):
            PostgresSource(self.postgres).dump_databases(['a', 'b'], str(tmp_path))

    def test_dump_databases_empty_list(self, tmp_path):
        with pytest.raises(NoDatabasesDumpedError):
            PostgresSource(self.postgres).dump_databases([], str(tmp_path))

    @patch('stashly.backup.sources.subprocess.run')
    def test_dump_databases_checks_cancellation_before_each(self, mock_run, tmp_path):
        mock_run.return_value = _completed()
        check = MagicMock(side_effect=[None, RuntimeError('cancelled')])

        with pytest.raises(RuntimeError, match='cancelled'):
            PostgresSource(self.postgres).dump_databases(
                ['a', 'b', 'c'], str(tmp_path), cancellation_check=check
            )

        assert mock_run.call_count == 1

    @patch('stashly.backup.sources.subprocess.run')
    def test_dump_databases_passes_remaining_time(self, mock_run, tmp_path):
        mock_run.return_value = _completed()

        PostgresSource(self.postgres).dump_databases(
            ['a'], str(tmp_path), time_remaining=lambda: 42.0
        )

        assert mock_run.call_args[1]['timeout'] == 42.0


class TestDumpFilename:

    def test_plain_name(self):
        assert dump_filename('app') == 'app.sql'

    def test_separator_is_escaped(self):
        assert dump_filename('weird/name') == 'weird%2Fname.sql'

    def test_distinct_names_never_share_a_file(self):
        names = ['a/b', 'a_b', 'a%2Fb', 'a b', 'a%20b']
        assert len({dump_filename(name) for name in names}) == len(names)

    @patch('stashly.backup.sources.subprocess.run')
    def test_similar_names_dump_to_separate_files(self, mock_run, tmp_path):
        def run(cmd, **kwargs):
            target = cmd[-1][len('--file='):]
            with open(target, 'w') as f:
                f.write(cmd[-2])
            return _completed()

        mock_run.side_effect = run

        PostgresSource(PostgresConfig()).dump_databases(['a/b', 'a_b'], str(tmp_path))

        assert sorted(p.name for p in tmp_path.iterdir()) == ['a%2Fb.sql', 'a_b.sql']
