"""Profile loading for the transfer engine.

A profile is a YAML file with three sections: ``settings`` (engine-wide
options), ``connections`` (logical id to connection definition) and
``configurations`` (source/destination pairs with their table mappings and
schedules). ``${VAR}`` and ``${VAR|default}`` placeholders are replaced from
the environment before the profile is parsed.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from sqltransfer.connections import ConnectionDefinition
from sqltransfer.core.resolver import InMemoryConfigurationStore
from sqltransfer.core.settings import EngineSettings
from sqltransfer.core.variables import build_variables, find_unresolved, substitute_any
from sqltransfer.logging import get_logger
from sqltransfer.models import Configuration

logger = get_logger(__name__)

DEFAULT_PROFILE = "sqltransfer.yml"
TOP_LEVEL_KEYS = ("settings", "connections", "configurations")


@dataclass
class ValidationReport:
    """Result of profile validation."""

    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def __bool__(self) -> bool:
        """Returns True if validation passed."""
        return self.is_valid


@dataclass
class TransferProfile:
    """Parsed profile contents."""

    path: Optional[str]
    settings: EngineSettings
    connections: Dict[str, ConnectionDefinition]
    configurations: List[Configuration]

    def configuration_store(self) -> InMemoryConfigurationStore:
        return InMemoryConfigurationStore(self.configurations)


def load_profile(
    path: str = DEFAULT_PROFILE, variables: Optional[Dict[str, Any]] = None
) -> TransferProfile:
    """Load and validate a profile file.

    Args:
        path: Path to the YAML profile
        variables: Values that take precedence over environment variables

    Returns:
        Parsed TransferProfile

    Raises:
        FileNotFoundError: If the profile file doesn't exist
        ValueError: If the YAML is invalid or the profile fails validation
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Profile file not found: {path}")

    logger.debug(f"Loading profile from '{path}'")
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in profile '{path}': {e}") from e

    profile = parse_profile(raw or {}, variables, path=path)
    logger.debug(
        f"Loaded profile '{path}' with {len(profile.connections)} connection(s) "
        f"and {len(profile.configurations)} configuration(s)"
    )
    return profile


def parse_profile(
    data: Dict[str, Any],
    variables: Optional[Dict[str, Any]] = None,
    path: Optional[str] = None,
) -> TransferProfile:
    """Build a TransferProfile from already-loaded YAML data.

    Raises:
        ValueError: If the profile fails validation
    """
    label = path or "<profile>"
    if not isinstance(data, dict):
        raise ValueError(f"Profile '{label}' must be a YAML mapping")

    data = substitute_any(data, build_variables(variables))
    for name in sorted(set(find_unresolved(data))):
        logger.warning(f"Profile '{label}': variable '{name}' is not set and has no default")

    try:
        settings = EngineSettings.from_dict(data.get("settings"))
        connections = {
            connection_id: ConnectionDefinition.from_dict(connection_id, config)
            for connection_id, config in (data.get("connections") or {}).items()
        }
        configurations = [
            Configuration.from_dict(c) for c in data.get("configurations") or []
        ]
    except (TypeError, ValueError) as e:
        raise ValueError(f"Profile validation failed for '{label}': {e}") from e

    report = validate_profile(data, connections, configurations)
    for warning in report.warnings:
        logger.warning(f"Profile '{label}': {warning}")
    if not report.is_valid:
        raise ValueError(
            f"Profile validation failed for '{label}':\n"
            + "\n".join(f"  - {error}" for error in report.errors)
        )

    return TransferProfile(
        path=path,
        settings=settings,
        connections=connections,
        configurations=configurations,
    )


def validate_profile(
    data: Dict[str, Any],
    connections: Dict[str, ConnectionDefinition],
    configurations: List[Configuration],
) -> ValidationReport:
    """Cross-reference checks that individual records cannot do themselves."""
    report = ValidationReport()

    for key in data:
        if key not in TOP_LEVEL_KEYS:
            report.warnings.append(f"Unknown top-level section '{key}' ignored")

    configuration_ids = set()
    mapping_owners: Dict[int, str] = {}
    for configuration in configurations:
        if configuration.configuration_id in configuration_ids:
            report.errors.append(
                f"Duplicate configuration id {configuration.configuration_id}"
            )
        configuration_ids.add(configuration.configuration_id)

        for role, connection_id, purpose in (
            ("source", configuration.source_connection_id, "read"),
            ("destination", configuration.destination_connection_id, "write"),
        ):
            definition = connections.get(connection_id)
            if definition is None:
                report.errors.append(
                    f"Configuration '{configuration.name}' {role} connection "
                    f"'{connection_id}' is not defined"
                )
            elif not definition.allows(purpose):
                report.errors.append(
                    f"Configuration '{configuration.name}' uses {definition.access}-only "
                    f"connection '{connection_id}' as its {role}"
                )

        # Watermarks are keyed by mapping id, so ids must be unique profile-wide
        for mapping in configuration.table_mappings:
            owner = mapping_owners.get(mapping.mapping_id)
            if owner is not None:
                report.errors.append(
                    f"Mapping id {mapping.mapping_id} is used by both '{owner}' "
                    f"and '{configuration.name}'"
                )
            mapping_owners[mapping.mapping_id] = configuration.name

        if not any(m.is_active for m in configuration.table_mappings):
            report.warnings.append(
                f"Configuration '{configuration.name}' has no active table mappings"
            )

    return report
