"""
Test configuration and shared fixtures.

Every test gets a fresh in-memory SQLite database with all broker tables. The
vault runs in its Fernet mode against that database, and provider HTTP calls
go to a mocked requests session.
"""

import os
import sys
from unittest.mock import Mock

import pytest
import requests

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from credential_broker.config import reset_config, set_config  # noqa: E402
from credential_broker.context.request_context import RequestContext  # noqa: E402
from credential_broker.db.db_config import (  # noqa: E402
    Base,
    DatabaseConfig,
    DatabaseManager,
    import_all_models,
    set_db_manager,
)
from credential_broker.exceptions import clear_correlation_id  # noqa: E402
from credential_broker.providers.registry import ProviderRegistry  # noqa: E402
from credential_broker.providers.token_client import ProviderTokenClient  # noqa: E402
from credential_broker.services.audit_service import AuditService  # noqa: E402
from credential_broker.services.credential_broker_service import (  # noqa: E402
    CredentialBrokerService,
)
from credential_broker.services.credential_service import CredentialService  # noqa: E402
from credential_broker.services.oauth_flow_service import OAuthFlowService  # noqa: E402
from credential_broker.services.permission_grant_service import (  # noqa: E402
    PermissionGrantService,
)
from credential_broker.vault.secret_vault import DatabaseSecretVault  # noqa: E402
from tests.fixtures.factories import bind_factories  # noqa: E402
from tests.fixtures.settings import VAULT_KEY, WEATHER_KEY, build_test_config  # noqa: E402


@pytest.fixture(scope="session")
def app_config():
    """Session-wide configuration installed as the global config."""
    config = build_test_config()
    set_config(config)
    yield config
    reset_config()


@pytest.fixture(autouse=True)
def clean_thread_state(app_config):
    """Reset the global config and thread-local context around every test."""
    set_config(app_config)
    RequestContext.clear()
    clear_correlation_id()
    yield
    RequestContext.clear()
    clear_correlation_id()


@pytest.fixture(scope="session")
def db_manager(app_config):
    """One in-memory SQLite engine shared by the whole run."""
    config = DatabaseConfig(db_type="sqlite", database=":memory:", development_mode=True)
    manager = DatabaseManager(config)
    import_all_models()
    set_db_manager(manager)
    yield manager
    set_db_manager(None)
    manager.close()


@pytest.fixture(scope="function")
def db_session(db_manager):
    """
    Fresh tables for every test.

    Services commit their own work, so isolation comes from recreating the
    schema rather than from an outer transaction.
    """
    Base.metadata.create_all(db_manager.engine)
    session = db_manager.new_session()
    bind_factories(session)
    yield session
    session.rollback()
    session.close()
    bind_factories(None)
    Base.metadata.drop_all(db_manager.engine)


# ==================== PROVIDERS ====================


@pytest.fixture
def registry(app_config):
    return ProviderRegistry.from_config(app_config)


@pytest.fixture
def mock_http():
    """requests.Session stand-in; tests queue responses on post/get."""
    return Mock(spec=requests.Session)


@pytest.fixture
def token_client(mock_http):
    return ProviderTokenClient(mock_http, timeout=5)


# ==================== SERVICES ====================


@pytest.fixture
def vault(db_session):
    return DatabaseSecretVault(db_session, VAULT_KEY)


@pytest.fixture
def audit_service(db_session, app_config):
    return AuditService(db_session, app_config)


@pytest.fixture
def credential_service(db_session, vault, registry, audit_service, app_config):
    return CredentialService(
        db_session, vault, registry=registry, audit=audit_service, config=app_config
    )


@pytest.fixture
def grant_service(db_session, audit_service, app_config):
    return PermissionGrantService(db_session, audit=audit_service, config=app_config)


@pytest.fixture
def oauth_service(db_session, vault, registry, token_client, audit_service, app_config):
    return OAuthFlowService(
        db_session, vault, registry, token_client, audit=audit_service, config=app_config
    )


@pytest.fixture
def broker_service(db_session, vault, grant_service, audit_service, app_config):
    return CredentialBrokerService(
        db_session, vault, grants=grant_service, audit=audit_service, config=app_config
    )


# ==================== DATA ====================


@pytest.fixture
def weather_credential(credential_service):
    """Active API-key credential owned by user-alice."""
    return credential_service.connect_api_key("user-alice", "weatherapi", WEATHER_KEY)
