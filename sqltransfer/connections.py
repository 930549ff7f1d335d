"""Resolution of logical connection ids to pooled SQLAlchemy engines.

Connection strings may contain secret placeholders such as
``{vault:vaultName:secretName}``. They are handed, unparsed, to an injected
secret resolver before use.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError, NoSuchModuleError

from sqltransfer.errors import ConnectionResolutionError
from sqltransfer.logging import get_logger

logger = get_logger(__name__)

ACCESS_LEVELS = ("read", "write", "readwrite")

# Connections used for inspection (validation, reflection) skip the access check
PURPOSES = ("read", "write", "inspect")


@dataclass
class ConnectionDefinition:
    """A named database connection from the profile."""

    connection_id: str
    url: str
    access: str = "readwrite"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 3600
    connect_args: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None

    def __post_init__(self):
        if not self.url:
            raise ValueError(f"Connection '{self.connection_id}' missing required 'url' field")
        self.access = str(self.access).lower()
        if self.access not in ACCESS_LEVELS:
            raise ValueError(
                f"Connection '{self.connection_id}' access must be one of "
                f"{', '.join(ACCESS_LEVELS)}, got '{self.access}'"
            )

    def allows(self, purpose: str) -> bool:
        if purpose == "inspect":
            return True
        return self.access == "readwrite" or self.access == purpose

    @classmethod
    def from_dict(cls, connection_id: str, config: Any) -> "ConnectionDefinition":
        """Create a definition from a profile entry; a bare string is the URL."""
        if isinstance(config, str):
            return cls(connection_id=connection_id, url=config)
        if not isinstance(config, dict):
            raise ValueError(f"Connection '{connection_id}' configuration must be a dictionary")

        return cls(
            connection_id=connection_id,
            url=config.get("url"),
            access=config.get("access", "readwrite"),
            pool_size=int(config.get("pool_size", 5)),
            max_overflow=int(config.get("max_overflow", 10)),
            pool_timeout=int(config.get("pool_timeout", 30)),
            pool_recycle=int(config.get("pool_recycle", 3600)),
            connect_args=dict(config.get("connect_args") or {}),
            description=config.get("description"),
        )


class ConnectionProvider:
    """Hands out one cached, pooled engine per logical connection id.

    Engines are thread-safe and pool their connections, so concurrent
    workers share an engine but never a single connection.
    """

    def __init__(
        self,
        definitions: Dict[str, ConnectionDefinition],
        secret_resolver: Optional[Callable[[str], str]] = None,
    ):
        """Initialize the provider.

        Args:
            definitions: Connection definitions keyed by logical id
            secret_resolver: Optional callable that replaces secret
                placeholders in a connection string
        """
        self.definitions = dict(definitions)
        self.secret_resolver = secret_resolver
        self._engines: Dict[str, Engine] = {}
        self._lock = threading.Lock()

    def get_definition(self, connection_id: str) -> ConnectionDefinition:
        definition = self.definitions.get(connection_id)
        if definition is None:
            raise ConnectionResolutionError("Unknown connection id", connection_id)
        return definition

    def resolve_connection_string(self, connection_id: str) -> str:
        """Return the usable connection string for a logical id.

        Raises:
            ConnectionResolutionError: If the id is unknown or secret
                resolution fails
        """
        url = self.get_definition(connection_id).url
        if self.secret_resolver is None:
            return url

        try:
            return self.secret_resolver(url)
        except Exception as e:
            raise ConnectionResolutionError(
                f"Secret resolution failed: {e}", connection_id
            ) from e

    def get_engine(self, connection_id: str, purpose: str = "read") -> Engine:
        """Return the pooled engine for a logical id.

        Args:
            connection_id: Logical connection id
            purpose: "read", "write" or "inspect"

        Raises:
            ConnectionResolutionError: If the id is unknown, the access
                level forbids the purpose, or the URL is invalid
        """
        if purpose not in PURPOSES:
            raise ValueError(f"Unknown connection purpose '{purpose}'")

        definition = self.get_definition(connection_id)
        if not definition.allows(purpose):
            raise ConnectionResolutionError(
                f"Connection is {definition.access}-only and cannot be used to {purpose}",
                connection_id,
            )

        with self._lock:
            engine = self._engines.get(connection_id)
            if engine is None:
                engine = self._create_engine(definition)
                self._engines[connection_id] = engine
        return engine

    def _create_engine(self, definition: ConnectionDefinition) -> Engine:
        connection_string = self.resolve_connection_string(definition.connection_id)
        try:
            url = make_url(connection_string)
            engine = create_engine(
                url,
                connect_args=definition.connect_args,
                **self._pool_config(definition, url.get_backend_name()),
            )
        except (ArgumentError, NoSuchModuleError, ImportError, ValueError) as e:
            raise ConnectionResolutionError(
                f"Invalid connection string: {e}", definition.connection_id
            ) from e

        logger.info(
            f"Created engine for connection '{definition.connection_id}' "
            f"({url.get_backend_name()}, {definition.access})"
        )
        return engine

    @staticmethod
    def _pool_config(definition: ConnectionDefinition, backend: str) -> Dict[str, Any]:
        """Pooling options; SQLite keeps SQLAlchemy's own pool choice."""
        if backend == "sqlite":
            return {}
        return {
            "pool_size": definition.pool_size,
            "max_overflow": definition.max_overflow,
            "pool_recycle": definition.pool_recycle,
            "pool_pre_ping": True,
            "pool_timeout": definition.pool_timeout,
        }

    def dispose(self) -> None:
        """Dispose every engine created so far."""
        with self._lock:
            for connection_id, engine in self._engines.items():
                engine.dispose()
                logger.debug(f"Disposed engine for connection '{connection_id}'")
            self._engines.clear()
