from abc import ABC, abstractmethod


class BasePlugin(ABC):
    """Abstract base class for database technology plugins."""

    @property
    @abstractmethod
    def technology_name(self):
        """A lowercase, URL-friendly name for the technology (e.g., 'postgres')."""
        pass

    @abstractmethod
    def get_connector(self, settings):
        """Returns an instance of the technology-specific connector."""
        pass

    @abstractmethod
    def get_bloat_estimator(self, connector):
        """Returns the bloat estimator bound to an open connector."""
        pass

    @abstractmethod
    def get_reindex_coordinator(self, connector, dry_run=False):
        """Returns the online reindex coordinator bound to an open connector."""
        pass

    @abstractmethod
    def get_report_definition(self, report_config_file=None):
        """Returns the structure of the report, defining which checks to run."""
        pass
