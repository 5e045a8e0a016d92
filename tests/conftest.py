"""Shared fixtures."""

import pytest
from pydantic_settings import SettingsConfigDict

from coachsync.config import Settings
from coachsync.database import AccountRepository, DatabaseManager, EventStore
from coachsync.models import SyncConfiguration


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    __test__ = False

    model_config = SettingsConfigDict(
        env_file=None,  # Don't read from .env files
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None  # Don't read from secrets directory
    )


def make_settings(tmp_path, name='test.db', **sync_options):
    return TestSettings(
        api_base_url='http://peer.test',
        google_client_id='google-client',
        outlook_client_id='outlook-client',
        data_dir=str(tmp_path),
        database_url=f'sqlite:///{tmp_path}/{name}',
        sync_config=SyncConfiguration(**sync_options),
    )


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def db_manager(settings):
    manager = DatabaseManager(settings)
    manager.init_db()
    yield manager
    manager.close()


@pytest.fixture
def store(db_manager):
    return EventStore(db_manager)


@pytest.fixture
def accounts(db_manager):
    return AccountRepository(db_manager)
