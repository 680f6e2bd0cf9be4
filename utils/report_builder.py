"""
Defines the ReportBuilder class, which assembles the bloat report by
executing the check modules listed in a report definition.
"""

import importlib
import logging
from datetime import datetime

logger = logging.getLogger(__name__)


class ReportBuilder:
    """Handles the construction of the bloat report.

    Attributes:
        connector (object): The active database connector instance.
        settings (dict): The main application settings.
        report_sections (list): The list of sections that define the report structure.
        app_version (str): The current version of the application.
    """

    def __init__(self, connector, settings, report_sections, app_version):
        self.connector = connector
        self.settings = settings
        self.report_sections = report_sections
        self.app_version = app_version
        self.adoc_content = []
        self.all_structured_findings = {}

    def build(self):
        """Builds the full report by iterating through sections and actions.

        Returns:
            tuple[str, dict]: The complete AsciiDoc report content, and a
            dictionary containing all structured findings from the checks.
        """
        self.adoc_content.append(self._header())

        for section in self.report_sections:
            if section.get('title'):
                self.adoc_content.append(f"== {section['title']}")
            for action in section['actions']:
                if action.get('type') == 'module':
                    content = self._run_module(action['module'], action['function'])
                    self.adoc_content.append(content)

        return "\n\n".join(self.adoc_content), self.all_structured_findings

    def _header(self):
        metadata = self.connector.get_db_metadata()
        return "\n".join([
            f"= Bloat Report: {metadata['db_name']}",
            f":pg-version: {metadata['version']}",
            f":generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}",
            f":tool-version: {self.app_version}",
        ])

    def _run_module(self, module_name, function_name):
        """Dynamically imports and executes a function from a check module.

        Returns:
            str: The AsciiDoc content returned by the function, or a
                 formatted error string if the module fails.
        """
        key = module_name.split('.')[-1]
        try:
            module = importlib.import_module(module_name)
            func = getattr(module, function_name)
            adoc_content, structured_data = func(self.connector, self.settings)
            self.all_structured_findings[key] = structured_data
            return adoc_content
        except Exception as e:
            logger.error(f"Module {module_name}.{function_name} failed: {e}")
            self.all_structured_findings[key] = {"status": "error", "error": str(e)}
            return f"[ERROR]\n====\nModule {module_name}.{function_name} failed: {e}\n====\n"
