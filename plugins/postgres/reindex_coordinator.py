"""
Online index rebuild that keeps the table available.

A rebuild is planned first and executed second. Planning walks a small state
machine of read-only catalog lookups and appends DDL steps to a ReindexPlan;
anything it does not fully understand aborts planning before a single
statement has run. Execution then builds a replacement index concurrently,
swaps it in with one short transaction, and revalidates any foreign keys
that referenced the old index in a later transaction.
"""

import logging
import re
from enum import Enum

from plugins.postgres.ddl_executor import DDLStatementExecutor
from plugins.postgres.errors import (
    ExecutionFault, ReindexAborted, UnparsableDefinition,
    UnsupportedConstraintKind, UnsupportedDependentKind)
from plugins.postgres.index_resolver import IndexDependencyResolver
from plugins.postgres.models import ConstraintKind, ReindexPlan, TransactionScope
from plugins.postgres.utils.identifiers import qualified, quote_ident, truncate_identifier

logger = logging.getLogger(__name__)

# "CREATE [UNIQUE] INDEX <name> ON ..." -> ("CREATE [UNIQUE]", "ON ...")
INDEX_PATTERN = r'(.+?) INDEX {name} (ON .+)'

# Names pg_get_indexdef may print without quotes
_PLAIN_IDENT = re.compile(r'[a-z_][a-z0-9_]*')

TEMP_PREFIX = "tmp_"

_NOT_VALID_SUFFIX = re.compile(r'\s+NOT VALID\s*$', re.IGNORECASE)


class ReindexState(Enum):
    RESOLVE = "resolve"
    PARSE_DEFINITION = "parse_definition"
    CLEAR_STALE_TEMP = "clear_stale_temp"
    CLASSIFY_CONSTRAINT = "classify_constraint"
    DISCOVER_DEPENDENTS = "discover_dependents"
    BUILD_CONCURRENTLY = "build_concurrently"
    SWAP_IN = "swap_in"
    RESTORE_FOREIGN_KEYS = "restore_foreign_keys"
    DONE = "done"
    FAILED = "failed"


def temp_index_name(index_name):
    return truncate_identifier(TEMP_PREFIX + index_name)


class _PlanContext:
    """Working state for one planning pass. Discarded once the plan is built."""

    def __init__(self, record):
        self.record = record
        self.plan = ReindexPlan(target=record, temp_name=temp_index_name(record.index_name))
        self.kind_prefix = None
        self.on_clause = None

    @property
    def index_label(self):
        return qualified(self.record.schema, self.record.index_name)


class OnlineReindexCoordinator:
    """
    Rebuilds one bloated index at a time without blocking table traffic.

    The connector's session is used for the lookups and, through the
    executor, for the DDL. Only one coordinator run should use a given
    session at a time; nothing is kept between runs.
    """

    def __init__(self, connector, resolver=None, executor=None, dry_run=False):
        self.connector = connector
        self.resolver = resolver or IndexDependencyResolver(connector)
        self.executor = executor or DDLStatementExecutor(connector.conn, dry_run=dry_run)
        self._handlers = {
            ReindexState.RESOLVE: self._resolve,
            ReindexState.PARSE_DEFINITION: self._parse_definition,
            ReindexState.CLEAR_STALE_TEMP: self._clear_stale_temp,
            ReindexState.CLASSIFY_CONSTRAINT: self._classify_constraint,
            ReindexState.DISCOVER_DEPENDENTS: self._discover_dependents,
            ReindexState.BUILD_CONCURRENTLY: self._build_concurrently,
            ReindexState.SWAP_IN: self._swap_in,
            ReindexState.RESTORE_FOREIGN_KEYS: self._restore_foreign_keys,
        }

    def plan(self, record):
        """
        Builds the ReindexPlan for an index without executing anything.

        Raises:
            ReindexAborted: (or a subclass) if the index cannot be rebuilt
                safely. No statement has been issued at that point.
        """
        ctx = _PlanContext(record)
        state = ReindexState.RESOLVE
        try:
            while state is not ReindexState.DONE:
                logger.debug(f"{ctx.index_label}: entering {state.value}")
                state = self._handlers[state](ctx)
        except ReindexAborted:
            logger.debug(f"{ctx.index_label}: {state.value} -> {ReindexState.FAILED.value}")
            raise
        return ctx.plan

    def reindex(self, record):
        """
        Rebuilds the index described by an IndexBloatRecord.

        Returns:
            int: Rows affected by the final statement, or 0 if the rebuild
            was refused. A refused rebuild leaves the original index intact.
            psycopg2 reports no row count for DDL, so a successful rebuild
            usually returns 0 as well; use reindex_all when the outcome
            matters, or check the logged warning for a refusal.

        Raises:
            ExecutionFault: A generated statement failed. Steps committed
                before it stay committed; the failing step was rolled back.
        """
        try:
            plan = self.plan(record)
        except ReindexAborted as e:
            logger.warning(f"Not rebuilding {e.index_name}: {e.reason}. Manual reindex required.")
            return 0

        return self.executor.execute_plan(plan)

    def reindex_all(self, records):
        """
        Rebuilds each index in turn.

        A fault on one index is logged and recorded, and the remaining
        indexes are still attempted.

        Returns:
            dict: qualified index name -> {'status', 'rows', 'error'} where
            status is 'rebuilt', 'skipped' or 'failed'.
        """
        results = {}
        for record in records:
            name = record.qualified_name
            try:
                plan = self.plan(record)
            except ReindexAborted as e:
                logger.warning(f"Not rebuilding {e.index_name}: {e.reason}. Manual reindex required.")
                results[name] = {'status': 'skipped', 'rows': 0, 'error': e.reason}
                continue

            try:
                rows = self.executor.execute_plan(plan)
            except ExecutionFault as e:
                logger.error(f"Rebuild of {name} failed: {e}")
                results[name] = {'status': 'failed', 'rows': 0, 'error': str(e)}
                continue

            results[name] = {'status': 'rebuilt', 'rows': rows, 'error': None}
        return results

    # --- state handlers: each appends to the plan and returns the next state ---

    def _resolve(self, ctx):
        ctx.plan.definition = self.resolver.resolve(ctx.record.schema, ctx.record.index_name)
        return ReindexState.PARSE_DEFINITION

    def _parse_definition(self, ctx):
        definition = ctx.plan.definition.definition
        pattern = INDEX_PATTERN.format(name=_index_name_token(ctx.record.index_name))
        match = re.fullmatch(pattern, definition, re.DOTALL)
        if not match:
            raise UnparsableDefinition(
                ctx.index_label, f"could not parse index definition [{definition}]")
        ctx.kind_prefix, ctx.on_clause = match.group(1), match.group(2)
        return ReindexState.CLEAR_STALE_TEMP

    def _clear_stale_temp(self, ctx):
        # A leftover from an interrupted run is usually an INVALID index
        ctx.plan.add_step(
            ReindexState.CLEAR_STALE_TEMP.value, TransactionScope.AUTONOMOUS,
            [f"DROP INDEX IF EXISTS {qualified(ctx.record.schema, ctx.plan.temp_name)}"])
        return ReindexState.CLASSIFY_CONSTRAINT

    def _classify_constraint(self, ctx):
        constraint = self.resolver.find_backing_constraint(
            ctx.record.schema, ctx.record.index_name, index_oid=ctx.plan.definition.oid)
        if constraint is not None and constraint.kind is ConstraintKind.OTHER:
            raise UnsupportedConstraintKind(
                ctx.index_label,
                f"can not recreate index for constraint type '{constraint.code}'")
        ctx.plan.constraint = constraint
        return ReindexState.DISCOVER_DEPENDENTS

    def _discover_dependents(self, ctx):
        exclude = ctx.plan.constraint.oid if ctx.plan.constraint else None
        dependents = self.resolver.find_foreign_dependents(ctx.plan.definition.oid, exclude)
        for dependent in dependents:
            if not dependent.is_foreign_key:
                raise UnsupportedDependentKind(
                    ctx.index_label,
                    f"constraint {dependent.name} (type '{dependent.kind_code}') depends on it "
                    f"and can not be recreated automatically")
        ctx.plan.dependents = dependents
        return ReindexState.BUILD_CONCURRENTLY

    def _build_concurrently(self, ctx):
        ctx.plan.add_step(
            ReindexState.BUILD_CONCURRENTLY.value, TransactionScope.AUTONOMOUS,
            [f"{ctx.kind_prefix} INDEX CONCURRENTLY {quote_ident(ctx.plan.temp_name)} {ctx.on_clause}"])
        return ReindexState.SWAP_IN

    def _swap_in(self, ctx):
        record, plan = ctx.record, ctx.plan

        # Foreign keys pin the old index, so they come off first and go back
        # on, unvalidated, before this transaction commits.
        statements = [
            f"ALTER TABLE {qualified(fk.schema, fk.table_name)} DROP CONSTRAINT {quote_ident(fk.name)}"
            for fk in plan.dependents
        ]

        if plan.constraint is not None:
            statements.append(
                f"ALTER TABLE {qualified(record.schema, record.table_name)} "
                f"DROP CONSTRAINT {quote_ident(record.index_name)}, "
                f"ADD CONSTRAINT {quote_ident(record.index_name)} {plan.constraint.kind.ddl_keyword} "
                f"USING INDEX {quote_ident(plan.temp_name)}"
                f"{_deferrable_clause(plan.constraint)}")
        else:
            statements.append(f"DROP INDEX IF EXISTS {qualified(record.schema, record.index_name)}")
            statements.append(
                f"ALTER INDEX {qualified(record.schema, plan.temp_name)} "
                f"RENAME TO {quote_ident(record.index_name)}")

        statements.extend(
            f"ALTER TABLE {qualified(fk.schema, fk.table_name)} ADD CONSTRAINT {quote_ident(fk.name)} "
            f"{_strip_not_valid(fk.definition)} NOT VALID"
            for fk in plan.dependents)

        plan.add_step(ReindexState.SWAP_IN.value, TransactionScope.TRANSACTION, statements)
        return ReindexState.RESTORE_FOREIGN_KEYS

    def _restore_foreign_keys(self, ctx):
        # Keys that were NOT VALID before the rebuild stay that way
        to_validate = [fk for fk in ctx.plan.dependents if fk.validated]
        if to_validate:
            ctx.plan.add_step(
                "validate_foreign_keys", TransactionScope.TRANSACTION,
                [f"ALTER TABLE {qualified(fk.schema, fk.table_name)} VALIDATE CONSTRAINT {quote_ident(fk.name)}"
                 for fk in to_validate])
        return ReindexState.DONE


def _index_name_token(index_name):
    """Regex for the index name as pg_get_indexdef prints it."""
    quoted = re.escape(quote_ident(index_name))
    if _PLAIN_IDENT.fullmatch(index_name):
        # keywords come back quoted even when lowercase
        return f"(?:{re.escape(index_name)}|{quoted})"
    return quoted


def _deferrable_clause(constraint):
    if not constraint.deferrable:
        return ""
    if constraint.initially_deferred:
        return " DEFERRABLE INITIALLY DEFERRED"
    return " DEFERRABLE"


def _strip_not_valid(definition):
    return _NOT_VALID_SUFFIX.sub("", definition)
