"""
Output formatting utilities for bloat reports and CLI listings.

Provides:
- AsciiDoc tables and admonition blocks for the report
- Fixed-width text tables for the terminal
- Human-readable byte sizes
"""

from typing import List, Dict, Any


def format_bytes(bytes_value: int, decimal_places: int = 2) -> str:
    """
    Format bytes into human-readable string (KB, MB, GB, TB).

    Example:
        format_bytes(1536)           # "1.50 KB"
        format_bytes(0)              # "0 B"
    """
    if bytes_value == 0:
        return "0 B"

    if bytes_value < 0:
        return f"{bytes_value} B"

    units = ['B', 'KB', 'MB', 'GB', 'TB', 'PB']
    unit_index = 0
    value = float(bytes_value)
    while value >= 1024 and unit_index < len(units) - 1:
        value /= 1024
        unit_index += 1

    return f"{value:.{decimal_places}f} {units[unit_index]}"


class AsciiDocFormatter:
    """Formats data into AsciiDoc markup for reports."""

    def format_table(self, data: List[Dict[str, Any]]) -> str:
        """
        Formats a list of dictionaries as an AsciiDoc table.

        Args:
            data: List of dicts where keys are column names

        Returns:
            AsciiDoc table string
        """
        if not data:
            return self.format_note("No data to display.")

        columns = list(data[0].keys())

        table_lines = ['|===']
        table_lines.append('|' + '|'.join(columns))

        for row in data:
            row_values = [self._escape_asciidoc(str(row.get(col, ''))) for col in columns]
            table_lines.append('|' + '|'.join(row_values))

        table_lines.append('|===')

        return '\n'.join(table_lines)

    def _escape_asciidoc(self, text: str) -> str:
        # Pipes delimit cells, brackets can trigger macros
        return text.replace('|', '\\|').replace('[', '\\[').replace(']', '\\]')

    def format_note(self, message: str) -> str:
        return f"[NOTE]\n====\n{message}\n====\n"

    def format_critical(self, message: str) -> str:
        return f"[IMPORTANT]\n====\n{message}\n====\n"

    def format_error(self, error: str) -> str:
        return f"[ERROR]\n====\n{error}\n====\n"

    def format_tip(self, message: str) -> str:
        return f"[TIP]\n====\n{message}\n====\n"


def format_text_table(data: List[Dict[str, Any]]) -> str:
    """Renders rows as a left-aligned fixed-width table for terminal output."""
    if not data:
        return "(no rows)"

    columns = list(data[0].keys())
    widths = {
        col: max(len(col), *(len(str(row.get(col, ''))) for row in data))
        for col in columns
    }

    header = '  '.join(col.ljust(widths[col]) for col in columns)
    rule = '  '.join('-' * widths[col] for col in columns)
    lines = [header, rule]
    for row in data:
        lines.append('  '.join(str(row.get(col, '')).ljust(widths[col]) for col in columns))
    return '\n'.join(lines)
