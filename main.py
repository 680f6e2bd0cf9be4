#!/usr/bin/env python3
"""
Main entrypoint for the bloat estimation and online reindex tool.

This script loads the YAML configuration, discovers the database plugin,
and runs one of the maintenance commands: list table or index bloat,
write an AsciiDoc bloat report, or rebuild bloated indexes online.
"""

import yaml
import psycopg2
import sys
import importlib
import logging
import argparse
import pkgutil
from pathlib import Path

from plugins.base import BasePlugin
from plugins.common.output_formatters import format_bytes, format_text_table
from plugins.postgres.bloat_estimator import select_reindex_candidates
from plugins.postgres.errors import BloatQueryError, ReindexAborted, ReindexError
from utils.json_utils import safe_json_dumps
from utils.report_builder import ReportBuilder

try:
    APP_VERSION = (Path(__file__).parent / "VERSION").read_text().strip()
except FileNotFoundError:
    APP_VERSION = "unknown"

logger = logging.getLogger(__name__)

REQUIRED_SETTINGS = ['host', 'port', 'database', 'user', 'password']


def discover_plugins():
    """Finds and loads all available plugins from the 'plugins' directory.

    Returns:
        dict: A dictionary of loaded plugin instances, keyed by technology name.
    """
    plugins_path = Path(__file__).parent / "plugins"
    discovered_plugins = {}
    for _, name, _ in pkgutil.iter_modules([str(plugins_path)]):
        if name in ("base", "common"):
            continue
        try:
            module = importlib.import_module(f'plugins.{name}')
        except ImportError as e:
            logger.warning(f"Could not import plugin '{name}'. Missing dependency: {e}. Skipping.")
            continue
        for item_name in dir(module):
            item = getattr(module, item_name)
            if isinstance(item, type) and issubclass(item, BasePlugin) and item is not BasePlugin:
                plugin_instance = item()
                discovered_plugins[plugin_instance.technology_name] = plugin_instance
                logger.debug(f"Discovered plugin: {plugin_instance.technology_name}")
    return discovered_plugins


def load_settings(config_file):
    """Loads the YAML configuration file and fills in defaults.

    Raises:
        ValueError: If the file is unreadable, not a mapping, or is missing
            a required connection setting.
    """
    try:
        with open(config_file, 'r') as f:
            settings = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ValueError(f"Error loading settings from {config_file}: {e}") from e

    if not isinstance(settings, dict):
        raise ValueError(f"Settings file {config_file} must contain a mapping")

    missing = [s for s in REQUIRED_SETTINGS if s not in settings]
    if missing:
        raise ValueError(f"Missing required settings in {config_file}: {', '.join(missing)}")

    settings.setdefault('db_type', 'postgres')
    settings.setdefault('statement_timeout', 0)
    settings.setdefault('lock_timeout', 5000)
    settings.setdefault('log_level', 'INFO')
    settings.setdefault('log_file', None)

    reindex = settings.setdefault('reindex', {}) or {}
    reindex.setdefault('min_bloat_ratio', 30.0)
    reindex.setdefault('min_bloat_bytes', 10 * 1024 * 1024)
    reindex.setdefault('dry_run', False)
    settings['reindex'] = reindex

    return settings


def configure_logging(settings):
    handlers = [logging.StreamHandler()]
    if settings.get('log_file'):
        handlers.append(logging.FileHandler(settings['log_file']))
    logging.basicConfig(
        level=getattr(logging, str(settings.get('log_level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


class BloatMaintenance:
    """Wires settings, plugin and connector together for one CLI command."""

    def __init__(self, settings):
        self.settings = settings
        self.available_plugins = discover_plugins()
        active_tech = self.settings.get('db_type')
        self.active_plugin = self.available_plugins.get(active_tech)

        if not self.active_plugin:
            raise ValueError(f"Unsupported or missing db_type: '{active_tech}'. Available plugins: {list(self.available_plugins.keys())}")

        self.connector = self.active_plugin.get_connector(self.settings)

    def __enter__(self):
        self.connector.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.connector.disconnect()
        return False

    def list_table_bloat(self):
        return self.active_plugin.get_bloat_estimator(self.connector).estimate_table_bloat()

    def list_index_bloat(self):
        return self.active_plugin.get_bloat_estimator(self.connector).estimate_index_bloat()

    def build_report(self, report_config_file=None):
        sections = self.active_plugin.get_report_definition(report_config_file)
        builder = ReportBuilder(self.connector, self.settings, sections, APP_VERSION)
        return builder.build()

    def coordinator(self, dry_run):
        return self.active_plugin.get_reindex_coordinator(self.connector, dry_run=dry_run)


def _print_records(records, output_format):
    if output_format == 'json':
        print(safe_json_dumps(records, indent=2))
        return
    rows = []
    for r in records:
        row = r.to_dict()
        row['real_size_bytes'] = format_bytes(r.real_size_bytes)
        row['bloat_size_bytes'] = format_bytes(r.bloat_size_bytes)
        rows.append(row)
    print(format_text_table(rows))


def cmd_table_bloat(app, args):
    _print_records(app.list_table_bloat(), args.format)
    return 0


def cmd_index_bloat(app, args):
    records = app.list_index_bloat()
    if args.candidates:
        reindex = app.settings['reindex']
        records = select_reindex_candidates(records, reindex['min_bloat_ratio'], reindex['min_bloat_bytes'])
    _print_records(records, args.format)
    return 0


def cmd_report(app, args):
    adoc, findings = app.build_report(args.report_config)
    output_path = Path(args.output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(adoc)
    print(f"Report generated: {output_path}")
    if args.json:
        json_path = output_path.with_suffix('.json')
        json_path.write_text(safe_json_dumps(findings, indent=2))
        print(f"Structured findings saved to: {json_path}")
    return 0


def cmd_reindex(app, args):
    reindex = app.settings['reindex']
    dry_run = args.dry_run or bool(reindex.get('dry_run'))
    records = app.list_index_bloat()

    if args.all:
        min_ratio = args.min_ratio if args.min_ratio is not None else reindex['min_bloat_ratio']
        min_bytes = args.min_bytes if args.min_bytes is not None else reindex['min_bloat_bytes']
        targets = select_reindex_candidates(records, min_ratio, min_bytes)
        if not targets:
            print("No index meets the rebuild thresholds.")
            return 0
    else:
        targets = [r for r in records if r.schema == args.schema and r.index_name == args.index]
        if not targets:
            print(f'Index "{args.schema}"."{args.index}" has no bloat estimate. It may not exist, '
                  f'may not be a valid btree index, or its table may need ANALYZE.')
            return 1

    coordinator = app.coordinator(dry_run)

    if dry_run:
        for record in targets:
            try:
                plan = coordinator.plan(record)
            except ReindexAborted as e:
                print(f"-- {e.index_name}: not rebuildable: {e.reason}")
                continue
            print(f"-- {record.qualified_name} ({record.bloat_ratio:.1f}% bloat, {format_bytes(record.bloat_size_bytes)})")
            for step in plan.steps:
                print(f"-- step {step.name} [{step.scope.value}]")
                for statement in step.statements:
                    print(f"{statement};")
        return 0

    results = coordinator.reindex_all(targets)
    failed = 0
    for name, result in results.items():
        print(f"{name}: {result['status']}" + (f" ({result['error']})" if result['error'] else ""))
        if result['status'] == 'failed':
            failed += 1
    return 1 if failed else 0


def build_parser():
    parser = argparse.ArgumentParser(description='PostgreSQL bloat estimation and online reindex tool')
    parser.add_argument('--config', default='config/config.yaml', help='Path to configuration file')
    parser.add_argument('--version', action='version', version=f'%(prog)s {APP_VERSION}')
    subparsers = parser.add_subparsers(dest='command', required=True)

    p = subparsers.add_parser('table-bloat', help='List estimated table bloat')
    p.add_argument('--format', choices=['table', 'json'], default='table')
    p.set_defaults(func=cmd_table_bloat)

    p = subparsers.add_parser('index-bloat', help='List estimated btree index bloat')
    p.add_argument('--format', choices=['table', 'json'], default='table')
    p.add_argument('--candidates', action='store_true', help='Only show indexes meeting the rebuild thresholds')
    p.set_defaults(func=cmd_index_bloat)

    p = subparsers.add_parser('report', help='Write an AsciiDoc bloat report')
    p.add_argument('--output', default='adoc_out/bloat_report.adoc', help='Output file name')
    p.add_argument('--report-config', help='Path to a custom report configuration file.')
    p.add_argument('--json', action='store_true', help='Also save structured findings as JSON')
    p.set_defaults(func=cmd_report)

    p = subparsers.add_parser('reindex', help='Rebuild bloated indexes without blocking the table')
    target = p.add_mutually_exclusive_group(required=True)
    target.add_argument('--index', help='Index name (requires --schema)')
    target.add_argument('--all', action='store_true', help='Rebuild every index meeting the thresholds')
    p.add_argument('--schema', default='public', help='Schema of --index')
    p.add_argument('--min-ratio', type=float, help='Override reindex.min_bloat_ratio')
    p.add_argument('--min-bytes', type=int, help='Override reindex.min_bloat_bytes')
    p.add_argument('--dry-run', action='store_true', help='Print the generated DDL without running it')
    p.set_defaults(func=cmd_reindex)

    return parser


def main(argv=None):
    """Parses command line arguments and runs the selected command."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ValueError as e:
        print(e, file=sys.stderr)
        return 1

    configure_logging(settings)

    try:
        with BloatMaintenance(settings) as app:
            return args.func(app, args)
    except (BloatQueryError, ReindexError, ValueError, OSError, psycopg2.Error) as e:
        logger.error(str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
