"""
Integration fixtures: a file-backed SQLite database so that worker threads get
their own connections, wrapped in a fully wired BrokerApplication.
"""

import pytest

from credential_broker.app import BrokerApplication
from credential_broker.db.db_config import DatabaseConfig, DatabaseManager, import_all_models
from tests.fixtures.factories import bind_factories


@pytest.fixture
def file_db_manager(tmp_path):
    config = DatabaseConfig(
        db_type="sqlite", database=str(tmp_path / "broker.db"), development_mode=True
    )
    manager = DatabaseManager(config)
    import_all_models()
    manager.create_tables()
    yield manager
    manager.drop_tables()
    manager.close()


@pytest.fixture
def broker_app(app_config, file_db_manager, mock_http):
    return BrokerApplication(app_config, db_manager=file_db_manager, http=mock_http)


@pytest.fixture
def session(broker_app):
    """Session for test setup and assertions; factories write through it."""
    session = broker_app.new_session()
    bind_factories(session)
    yield session
    bind_factories(None)
    session.close()


def pytest_collection_modifyitems(config, items):
    """Mark everything under this folder as an integration test."""
    for item in items:
        if "integration" in item.path.parts:
            item.add_marker(pytest.mark.integration)
