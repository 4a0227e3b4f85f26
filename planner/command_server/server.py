"""
Command server orchestrator.

Wires the components together in dependency order:
    Database -> EntityStore, AuditLedger -> IdempotencyGuard
             -> handler table -> CommandRouter
    httpx.AsyncClient -> note-generation handler, remote token verifier

Invariants:
    - The schema exists before the router accepts a command
    - One HTTP client is shared by every outbound caller and closed on stop

How to change safely:
    - Add components to start() after their dependencies and to stop()
      in reverse order
"""

from __future__ import annotations

import logging

import httpx

from .auth import TokenVerifier, build_verifier
from .config import ServerConfig
from .handlers import build_handlers
from .idempotency import IdempotencyGuard
from .router import CommandRouter
from .store import AuditLedger, Database, EntityStore

logger = logging.getLogger(__name__)


class CommandServer:
    """Owns the lifecycle of every command-processing component.

    Attributes:
        config: Server configuration
        db: SQLite database
        store: Owner-scoped entity store
        ledger: Audit ledger
        guard: Idempotency guard
        router: Command router
        verifier: Token verifier

    Example:
        >>> server = CommandServer(config)
        >>> await server.start()
        >>> envelope = await server.router.handle_request("user-1", body)
        >>> await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            config: Optional server configuration (loaded from env if not provided)
            http_client: Optional HTTP client; one is created and owned if not provided
        """
        self.config = config or ServerConfig.from_env()
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._running = False

        self.db: Database | None = None
        self.store: EntityStore | None = None
        self.ledger: AuditLedger | None = None
        self.guard: IdempotencyGuard | None = None
        self.router: CommandRouter | None = None
        self.verifier: TokenVerifier | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Create the schema and build every component."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting planner command server")
        self.config.log_config()

        if self._http_client is None:
            self._http_client = httpx.AsyncClient()

        self.db = Database(
            self.config.storage.db_path,
            wal_mode=self.config.storage.wal_mode,
            busy_timeout_ms=self.config.storage.busy_timeout_ms,
        )
        await self.db.initialize()

        self.store = EntityStore(self.db)
        self.ledger = AuditLedger(self.db)
        self.guard = IdempotencyGuard(
            self.db,
            self.ledger,
            retry_attempts=self.config.idempotency.retry_attempts,
            retry_delay_ms=self.config.idempotency.retry_delay_ms,
        )
        self.router = CommandRouter(
            build_handlers(self.store, self.config, self._http_client),
            self.guard,
            self.ledger,
            default_source=self.config.scheduling.audit_source,
        )
        self.verifier = build_verifier(self.config.auth, self._http_client)

        self._running = True
        logger.info("Planner command server started")

    async def stop(self) -> None:
        """Release outbound resources."""
        if not self._running:
            return

        logger.info("Stopping planner command server")
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

        self._running = False
        logger.info("Planner command server stopped")
