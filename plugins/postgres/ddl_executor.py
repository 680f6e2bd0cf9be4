import logging

import psycopg2

from plugins.postgres.errors import ExecutionFault
from plugins.postgres.models import TransactionScope

logger = logging.getLogger(__name__)


class DDLStatementExecutor:
    """
    Runs reindex plan steps against an explicit transaction boundary.

    AUTONOMOUS steps run in autocommit mode, one statement at a time, which
    is the only way CREATE INDEX CONCURRENTLY is accepted. TRANSACTION steps
    run every statement in one transaction and commit once. Nothing is
    retried; a failure rolls back the current transaction and surfaces as
    ExecutionFault.
    """

    def __init__(self, conn, dry_run=False):
        self.conn = conn
        self.dry_run = dry_run

    def execute_plan(self, plan):
        """Runs every step in order and returns the last statement's row count."""
        rowcount = 0
        for step in plan.steps:
            rowcount = self.execute_step(step)
        return rowcount

    def execute_step(self, step):
        """Runs one plan step and returns the row count of its last statement."""
        logger.info(f"Running step '{step.name}' ({step.scope.value}, {len(step.statements)} statement(s))")

        if self.dry_run:
            for statement in step.statements:
                logger.info(f"[dry-run] {statement}")
            return 0

        if step.scope is TransactionScope.AUTONOMOUS:
            return self._run_autonomous(step)
        return self._run_transactional(step)

    def _run_autonomous(self, step):
        self._set_autocommit(step, True)
        rowcount = 0
        with self.conn.cursor() as cursor:
            for statement in step.statements:
                rowcount = self._execute(cursor, step, statement)
        return rowcount

    def _run_transactional(self, step):
        self._set_autocommit(step, False)
        rowcount = 0
        try:
            with self.conn.cursor() as cursor:
                for statement in step.statements:
                    rowcount = self._execute(cursor, step, statement)
            try:
                self.conn.commit()
            except psycopg2.Error as e:
                raise ExecutionFault(step.name, "COMMIT", e) from e
            logger.info(f"Committed step '{step.name}'")
        except ExecutionFault:
            self._rollback(step)
            raise
        finally:
            self._restore_autocommit(step)
        return rowcount

    def _set_autocommit(self, step, value):
        try:
            self.conn.autocommit = value
        except psycopg2.Error as e:
            raise ExecutionFault(step.name, f"SET autocommit = {value}", e) from e

    def _rollback(self, step):
        if self.conn.closed:
            logger.error(f"Connection lost during step '{step.name}', server discarded the transaction")
            return
        try:
            self.conn.rollback()
            logger.error(f"Rolled back step '{step.name}'")
        except psycopg2.Error as e:
            logger.error(f"Rollback of step '{step.name}' failed: {e}")

    def _restore_autocommit(self, step):
        if self.conn.closed:
            return
        try:
            self.conn.autocommit = True
        except psycopg2.Error as e:
            logger.error(f"Could not restore autocommit after step '{step.name}': {e}")

    def _execute(self, cursor, step, statement):
        logger.info(f"Executing: {statement}")
        try:
            cursor.execute(statement)
        except psycopg2.Error as e:
            logger.error(f"Statement failed in step '{step.name}': {e}")
            raise ExecutionFault(step.name, statement, e) from e
        # Utility statements report -1
        return max(cursor.rowcount, 0)
