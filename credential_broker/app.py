"""
Composition root for the credential broker.

``BrokerApplication`` owns the long-lived resources (database manager, HTTP
session, provider registry, token endpoint client) and builds request-scoped
services around a session for each unit of work. The ``main`` entry point runs
the background jobs from the command line.
"""

import argparse
import signal
import sys
import threading
from contextlib import contextmanager
from typing import Generator, List, Optional

import requests
from dotenv import load_dotenv
from sqlalchemy.orm import Session

from .config import AppConfig, get_config, set_config
from .db.db_config import DatabaseConfig, DatabaseManager, initialize_db
from .providers.registry import ProviderRegistry
from .providers.token_client import ProviderTokenClient
from .services.audit_service import AuditService
from .services.credential_broker_service import CredentialBrokerService
from .services.credential_service import CredentialService
from .services.oauth_flow_service import OAuthFlowService
from .services.permission_grant_service import PermissionGrantService
from .services.token_refresh_service import TokenRefreshService
from .utils.logger import configure_logging
from .vault.secret_vault import DatabaseSecretVault


class BrokerApplication:
    """
    Wires configuration, storage and provider access into broker services.

    Usage:
        app = BrokerApplication.from_env()
        with app.unit_of_work() as session:
            secret = app.broker(session).request_secret(agent_id, credential_id, "gmail.readonly")
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        db_manager: Optional[DatabaseManager] = None,
        http: Optional[requests.Session] = None,
        registry: Optional[ProviderRegistry] = None,
    ):
        self.config = config or get_config()
        self.db_manager = db_manager or initialize_db(self._database_config())
        self.http = http or requests.Session()
        self.token_client = ProviderTokenClient(
            self.http, timeout=self.config.oauth.http_timeout_seconds
        )
        self.registry = registry or ProviderRegistry.from_config(self.config)

    def _database_config(self) -> DatabaseConfig:
        db = self.config.database
        return DatabaseConfig.from_url(
            db.connection_string,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            echo=db.echo,
        )

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "BrokerApplication":
        """Load a .env file, then build the application from environment configuration."""
        load_dotenv(env_file)
        config = AppConfig.from_env()
        set_config(config)
        return cls(config)

    # ==================== SESSIONS ====================

    def new_session(self) -> Session:
        return self.db_manager.new_session()

    @contextmanager
    def unit_of_work(self) -> Generator[Session, None, None]:
        """Session for one request; rolled back on error and always closed."""
        session = self.new_session()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ==================== SERVICES ====================

    def vault(
        self, session: Session, statement_timeout_ms: Optional[int] = None
    ) -> DatabaseSecretVault:
        return DatabaseSecretVault(
            session,
            self.config.vault.encryption_key,
            statement_timeout_ms=statement_timeout_ms or self.config.vault.statement_timeout_ms,
        )

    def audit(self, session: Session) -> AuditService:
        return AuditService(session, self.config)

    def credentials(self, session: Session) -> CredentialService:
        return CredentialService(
            session,
            self.vault(session),
            registry=self.registry,
            audit=self.audit(session),
            config=self.config,
        )

    def grants(self, session: Session) -> PermissionGrantService:
        return PermissionGrantService(session, audit=self.audit(session), config=self.config)

    def oauth(self, session: Session) -> OAuthFlowService:
        return OAuthFlowService(
            session,
            self.vault(session),
            self.registry,
            self.token_client,
            audit=self.audit(session),
            config=self.config,
        )

    def broker(self, session: Session) -> CredentialBrokerService:
        """Broker whose vault statements are bounded by the request timeout."""
        timeout_ms = min(
            self.config.vault.statement_timeout_ms,
            int(self.config.broker.request_timeout_seconds * 1000),
        )
        audit = self.audit(session)
        return CredentialBrokerService(
            session,
            self.vault(session, statement_timeout_ms=timeout_ms),
            grants=PermissionGrantService(session, audit=audit, config=self.config),
            audit=audit,
            config=self.config,
        )

    def refresher(self, worker_id: Optional[str] = None) -> TokenRefreshService:
        return TokenRefreshService(
            self.registry,
            self.token_client,
            session_factory=self.new_session,
            vault_factory=self.vault,
            config=self.config,
            worker_id=worker_id,
        )

    def close(self) -> None:
        self.http.close()
        self.db_manager.close()


# ==================== COMMAND LINE ====================


def _run_refresh_worker(app: BrokerApplication, args: argparse.Namespace) -> int:
    refresher = app.refresher(worker_id=args.worker_id)
    if args.once:
        result = refresher.run_cycle()
        return 1 if result.failed else 0

    stop_event = threading.Event()

    def _stop(signum, frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    refresher.run_forever(stop_event)
    return 0


def _purge_flows(app: BrokerApplication, args: argparse.Namespace) -> int:
    with app.unit_of_work() as session:
        app.oauth(session).purge_stale_flows()
    return 0


def _verify_audit(app: BrokerApplication, args: argparse.Namespace) -> int:
    with app.unit_of_work() as session:
        tampered = app.audit(session).find_tampered_events()
    for event_id in tampered:
        print(event_id)
    return 1 if tampered else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="credential-broker",
        description="Background jobs for the agent credential broker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Refresh expiring tokens until stopped
  credential-broker refresh-worker

  # Run a single refresh cycle (e.g. from a scheduler)
  credential-broker refresh-worker --once

  # List audit events whose signature no longer matches
  credential-broker verify-audit
        """,
    )
    parser.add_argument("--env-file", help="Load environment variables from this .env file")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Commands")

    refresh_parser = subparsers.add_parser("refresh-worker", help="Refresh expiring OAuth tokens")
    refresh_parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    refresh_parser.add_argument("--worker-id", help="Identifier recorded on refresh claims")
    refresh_parser.set_defaults(handler=_run_refresh_worker)

    purge_parser = subparsers.add_parser("purge-flows", help="Delete stale OAuth flow states")
    purge_parser.set_defaults(handler=_purge_flows)

    verify_parser = subparsers.add_parser("verify-audit", help="Check audit event signatures")
    verify_parser.set_defaults(handler=_verify_audit)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    app = BrokerApplication.from_env(args.env_file)
    configure_logging(args.command)
    try:
        return args.handler(app, args)
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
