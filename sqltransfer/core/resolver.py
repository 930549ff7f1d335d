"""Configuration lookup and table mapping resolution."""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Union

from sqltransfer.errors import ConfigurationNotFoundError, NoActiveMappingsError
from sqltransfer.logging import get_logger
from sqltransfer.models import Configuration, TableMapping

logger = get_logger(__name__)

ConfigurationRef = Union[int, str]


class ConfigurationStore(ABC):
    """Read-only source of configurations."""

    @abstractmethod
    def get(self, configuration_id: int) -> Optional[Configuration]:
        """Configuration with the given id, or None."""

    @abstractmethod
    def list(self) -> List[Configuration]:
        """All configurations, active or not."""

    def find(self, reference: ConfigurationRef) -> Optional[Configuration]:
        """Look a configuration up by id, numeric string, or name."""
        if isinstance(reference, int):
            return self.get(reference)

        text = str(reference).strip()
        if text.isdigit():
            found = self.get(int(text))
            if found is not None:
                return found
        for configuration in self.list():
            if configuration.name.lower() == text.lower():
                return configuration
        return None


class InMemoryConfigurationStore(ConfigurationStore):
    """Configurations held in a dictionary, typically loaded from a profile."""

    def __init__(self, configurations: Iterable[Configuration] = ()):
        self._configurations: Dict[int, Configuration] = {}
        self._lock = threading.Lock()
        for configuration in configurations:
            self.add(configuration)

    def add(self, configuration: Configuration) -> None:
        with self._lock:
            self._configurations[configuration.configuration_id] = configuration

    def get(self, configuration_id: int) -> Optional[Configuration]:
        return self._configurations.get(configuration_id)

    def list(self) -> List[Configuration]:
        return sorted(self._configurations.values(), key=lambda c: c.configuration_id)


class TableMappingResolver:
    """Turns a configuration reference into the ordered mappings to process."""

    def __init__(self, store: ConfigurationStore):
        self.store = store

    def get_configuration(self, reference: ConfigurationRef) -> Configuration:
        """Active configuration for an id or name.

        Raises:
            ConfigurationNotFoundError: If it does not exist or is inactive
        """
        configuration = self.store.find(reference)
        if configuration is None or not configuration.is_active:
            raise ConfigurationNotFoundError(reference)
        return configuration

    def resolve_mappings(
        self,
        reference: ConfigurationRef,
        table_filter: Optional[Iterable[str]] = None,
    ) -> List[TableMapping]:
        """Active mappings of a configuration in execution order.

        Args:
            reference: Configuration id or name
            table_filter: Optional table names; a mapping is kept when any
                name matches its source or destination table, with or
                without schema, case-insensitively

        Returns:
            Mappings sorted by priority, then source table name, then id

        Raises:
            ConfigurationNotFoundError: If the configuration does not exist
            NoActiveMappingsError: If nothing is left to process
        """
        configuration = self.get_configuration(reference)
        mappings = [m for m in configuration.table_mappings if m.is_active]

        wanted = [name for name in (table_filter or []) if name and name.strip()]
        if wanted:
            mappings = [m for m in mappings if any(m.matches(name) for name in wanted)]
            unmatched = [
                name for name in wanted if not any(m.matches(name) for m in mappings)
            ]
            if unmatched:
                logger.warning(
                    f"Table filter entries matched no active mapping: {', '.join(unmatched)}"
                )

        if not mappings:
            raise NoActiveMappingsError(configuration.configuration_id, wanted or None)

        mappings.sort(key=lambda m: (m.priority, m.source_table.lower(), m.mapping_id))
        logger.debug(
            f"Resolved {len(mappings)} mapping(s) for configuration "
            f"'{configuration.name}': {[m.source_name for m in mappings]}"
        )
        return mappings

    def get_processed_tables(self, reference: Optional[ConfigurationRef] = None) -> List[str]:
        """Source tables the engine is configured to handle.

        Args:
            reference: Limit to one configuration; all active ones otherwise

        Returns:
            Sorted, de-duplicated ``schema.table`` names of active mappings
        """
        if reference is not None:
            configurations = [self.get_configuration(reference)]
        else:
            configurations = [c for c in self.store.list() if c.is_active]

        tables = {
            mapping.source_name
            for configuration in configurations
            for mapping in configuration.table_mappings
            if mapping.is_active
        }
        return sorted(tables, key=str.lower)
