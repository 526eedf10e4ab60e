"""
Shared pytest fixtures for Stashly tests.

This module provides fixtures for:
- Config instances pointing at temporary work directories
- Mock S3 (moto) with a test bucket
- Fake PostgreSQL source and notifier collaborators
- Staging directory contents
"""

import os
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from stashly.config import Config
from stashly.backup.sources import PostgresSource, PerDatabaseDumpError


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Keep boto3 away from real credentials."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def config(tmp_path):
    """
    Config for an S3 backend with instance 'db1' under prefix 'backups'.
    """
    cfg = Config()
    cfg.app.instance_id = 'db1'
    cfg.postgres.host = 'pg.example.com'
    cfg.postgres.user = 'backup'
    cfg.postgres.password = 'secret'
    cfg.storage.bucket = 'test-bucket'
    cfg.storage.prefix = 'backups'
    cfg.storage.access_key = 'test_access_key'
    cfg.storage.secret_key = 'test_secret_key'
    cfg.backup.work_dir = str(tmp_path / 'work')
    cfg.backup.retention_count = 2
    return cfg


@pytest.fixture
def local_config(config, tmp_path):
    """Same as config but storing into a local directory."""
    config.storage.backend = 'local'
    config.storage.local_path = str(tmp_path / 'store')
    return config


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def fake_notifier():
    """MagicMock standing in for stashly.notifiers.Notifier."""
    return MagicMock()


class FakeSource(PostgresSource):
    """
    PostgresSource that writes fake dumps instead of running pg_dump.

    Databases listed in ``failing`` raise PerDatabaseDumpError.
    """

    def __init__(self, databases, failing=()):
        super().__init__(postgres=None)
        self.databases = list(databases)
        self.failing = set(failing)
        self.dump_calls = []

    def list_databases(self, timeout=None):
        return list(self.databases)

    def dump_database(self, database, staging_dir, timeout=None):
        self.dump_calls.append(database)
        if database in self.failing:
            raise PerDatabaseDumpError(database, 'exit 1: connection refused')
        path = os.path.join(staging_dir, f"{database}.sql")
        with open(path, 'w') as f:
            f.write(f"-- dump of {database}\n")
        return path


@pytest.fixture
def fake_source_factory():
    return FakeSource


@pytest.fixture
def staging_files(tmp_path):
    """
    Create a staging directory with two dumps and a nested file.
    """
    staging = tmp_path / 'staging'
    staging.mkdir()
    (staging / 'a.sql').write_bytes(b'CREATE TABLE a (id int);\n')
    (staging / 'b.sql').write_bytes(b'CREATE TABLE b (id int);\n' * 100)
    nested = staging / 'nested'
    nested.mkdir()
    (nested / 'c.sql').write_bytes(b'-- nested\n')
    return staging
