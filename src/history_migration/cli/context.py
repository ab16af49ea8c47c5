"""
CLI context manager for History Bridge.

This module provides the context object that is passed to all CLI commands,
containing configuration, adapters, and the migration ledger.
"""

from dataclasses import dataclass, field
from pathlib import Path

from history_migration.client.exceptions import ConfigurationError
from history_migration.client.source_client import SourceClient
from history_migration.client.target_client import TargetClient
from history_migration.config import MigrationConfig, load_config_from_yaml
from history_migration.migration.coordinator import HistoryMigrator
from history_migration.migration.state import MigrationState
from history_migration.utils.logging import configure_from_settings, get_logger

logger = get_logger(__name__)


@dataclass
class MigrationContext:
    """
    Context object for CLI commands.

    Attributes:
        config_path: Path to configuration file
        log_level: Logging level
        log_file: Optional log file path
        config: Loaded migration configuration
        source_client: Client for the source history export
        target_client: Client for the target history store
        migration_state: Id-key ledger
        migrator: History migrator wired to the above
    """

    config_path: Path | None = None
    log_level: str | None = None
    log_file: Path | None = None

    # Lazy-loaded attributes
    _config: MigrationConfig | None = field(default=None, init=False, repr=False)
    _source_client: SourceClient | None = field(default=None, init=False, repr=False)
    _target_client: TargetClient | None = field(default=None, init=False, repr=False)
    _migration_state: MigrationState | None = field(default=None, init=False, repr=False)
    _migrator: HistoryMigrator | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> MigrationConfig:
        """Get or load migration configuration."""
        if self._config is None:
            if self.config_path is None:
                raise ConfigurationError(
                    "Configuration file path not provided. "
                    "Use --config option or set HISTORY_BRIDGE_CONFIG environment variable."
                )

            logger.debug("Loading configuration", config_path=str(self.config_path))
            self._config = load_config_from_yaml(self.config_path)
            configure_from_settings(
                self._config.logging,
                level=self.log_level,
                log_file=str(self.log_file) if self.log_file else None,
            )
            logger.debug("Configuration loaded successfully")

        return self._config

    @property
    def source_client(self) -> SourceClient:
        """Get or load the source history export."""
        if self._source_client is None:
            export_path = self.config.source.export_path
            if not export_path:
                raise ConfigurationError("source.export_path is not configured")

            logger.debug("Creating source client", export_path=export_path)
            self._source_client = SourceClient.from_file(
                export_path, page_size=self.config.source.page_size
            )

        return self._source_client

    @property
    def migration_state(self) -> MigrationState:
        """Get or create the ledger (initializes the database)."""
        if self._migration_state is None:
            logger.debug("Initializing migration state", db_path=self.config.state.db_path)
            self._migration_state = MigrationState(config=self.config.state)

        return self._migration_state

    @property
    def target_client(self) -> TargetClient:
        """Get or create the target store client."""
        if self._target_client is None:
            # target tables live in the ledger database
            state = self.migration_state
            self._target_client = TargetClient(state.database_url)

        return self._target_client

    @property
    def migrator(self) -> HistoryMigrator:
        """Get or create the history migrator."""
        if self._migrator is None:
            self._migrator = HistoryMigrator(
                config=self.config,
                state=self.migration_state,
                source=self.source_client,
                target=self.target_client,
            )

        return self._migrator

    def read_only_migrator(self) -> HistoryMigrator:
        """A migrator for LIST_SKIPPED runs; does not need the source export.

        Raises:
            ConfigurationError: If the ledger database does not exist yet
        """
        if not self.config.state.ledger_exists():
            raise ConfigurationError(
                f"Migration ledger not found: {self.config.state.db_path}. "
                "Run 'history-bridge migrate' first."
            )
        return HistoryMigrator(
            config=self.config,
            state=self.migration_state,
            source=SourceClient(page_size=self.config.source.page_size),
            target=self.target_client,
        )
