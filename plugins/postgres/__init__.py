import importlib.util
from pathlib import Path

# --- Import the components of this plugin ---
from .connector import PostgresConnector
from .bloat_estimator import BloatEstimator
from .reindex_coordinator import OnlineReindexCoordinator

# --- Import the base class it must implement ---
from plugins.base import BasePlugin


class PostgresPlugin(BasePlugin):
    """The PostgreSQL implementation of the plugin interface."""

    @property
    def technology_name(self):
        return "postgres"

    def get_connector(self, settings):
        """Returns an instance of the PostgreSQL connector."""
        return PostgresConnector(settings)

    def get_bloat_estimator(self, connector):
        return BloatEstimator(connector)

    def get_reindex_coordinator(self, connector, dry_run=False):
        return OnlineReindexCoordinator(connector, dry_run=dry_run)

    def get_report_definition(self, report_config_file=None):
        """
        Dynamically loads a report definition from a file.
        Falls back to the default if no file is specified.
        """
        if report_config_file:
            config_path = Path(report_config_file)
        else:
            config_path = Path(__file__).parent / "reports" / "default.py"

        if not config_path.is_file():
            raise FileNotFoundError(f"Report configuration file not found: {config_path}")

        spec = importlib.util.spec_from_file_location("report_config_module", config_path)
        report_module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(report_module)

        return getattr(report_module, 'REPORT_SECTIONS')
