import unittest
from unittest.mock import MagicMock

from plugins.postgres.errors import (
    ExecutionFault, NotFound, UnparsableDefinition,
    UnsupportedConstraintKind, UnsupportedDependentKind)
from plugins.postgres.models import (
    ConstraintInfo, ConstraintKind, ForeignKeyDependent, IndexBloatRecord,
    IndexDefinition, TransactionScope)
from plugins.postgres.reindex_coordinator import (
    OnlineReindexCoordinator, ReindexState, temp_index_name)

DESTRUCTIVE_VERBS = ("DROP", "ALTER", "CREATE")


class RecordingExecutor:
    """Stands in for DDLStatementExecutor and records what it was asked to run."""

    def __init__(self, rowcount=1, fail_on=None):
        self.rowcount = rowcount
        self.fail_on = fail_on
        self.steps = []

    def execute_plan(self, plan):
        for step in plan.steps:
            self.steps.append(step)
            if step.name == self.fail_on:
                raise ExecutionFault(step.name, step.statements[0], Exception("deadlock detected"))
        return self.rowcount

    @property
    def statements(self):
        return [stmt for step in self.steps for stmt in step.statements]


def obs_record(index_name="idx_obs_station_time", table_name="observation"):
    return IndexBloatRecord(
        schema="public", table_name=table_name, index_name=index_name,
        real_size_bytes=80 * 1024 * 1024, bloat_size_bytes=40 * 1024 * 1024, bloat_ratio=50.0)


def fk_reading_station(validated=True):
    definition = "FOREIGN KEY (station_id, obs_time) REFERENCES public.observation(station_id, obs_time)"
    if not validated:
        definition += " NOT VALID"
    return ForeignKeyDependent(
        name="fk_reading_station", table_name="reading", schema="public",
        kind_code="f", definition=definition, validated=validated)


class TestOnlineReindexCoordinator(unittest.TestCase):
    def setUp(self):
        self.resolver = MagicMock()
        self.resolver.resolve.return_value = IndexDefinition(
            oid=16401,
            definition="CREATE UNIQUE INDEX idx_obs_station_time ON public.observation USING btree (station_id, obs_time)")
        self.resolver.find_backing_constraint.return_value = ConstraintInfo(
            oid=16402, kind=ConstraintKind.UNIQUE, code="u")
        self.resolver.find_foreign_dependents.return_value = [fk_reading_station()]
        self.executor = RecordingExecutor(rowcount=7)
        self.coordinator = OnlineReindexCoordinator(
            MagicMock(), resolver=self.resolver, executor=self.executor)

    def test_unique_constraint_with_foreign_key_emits_full_sequence(self):
        rows = self.coordinator.reindex(obs_record())

        self.assertEqual(rows, 7)
        self.assertEqual(
            [s.name for s in self.executor.steps],
            ["clear_stale_temp", "build_concurrently", "swap_in", "validate_foreign_keys"])
        self.assertEqual(
            [s.scope for s in self.executor.steps],
            [TransactionScope.AUTONOMOUS, TransactionScope.AUTONOMOUS,
             TransactionScope.TRANSACTION, TransactionScope.TRANSACTION])

        clear, build, swap, validate = self.executor.steps
        self.assertEqual(clear.statements, ('DROP INDEX IF EXISTS "public"."tmp_idx_obs_station_time"',))
        self.assertEqual(
            build.statements,
            ('CREATE UNIQUE INDEX CONCURRENTLY "tmp_idx_obs_station_time" '
             'ON public.observation USING btree (station_id, obs_time)',))
        self.assertEqual(swap.statements, (
            'ALTER TABLE "public"."reading" DROP CONSTRAINT "fk_reading_station"',
            'ALTER TABLE "public"."observation" DROP CONSTRAINT "idx_obs_station_time", '
            'ADD CONSTRAINT "idx_obs_station_time" UNIQUE USING INDEX "tmp_idx_obs_station_time"',
            'ALTER TABLE "public"."reading" ADD CONSTRAINT "fk_reading_station" '
            'FOREIGN KEY (station_id, obs_time) REFERENCES public.observation(station_id, obs_time) NOT VALID',
        ))
        self.assertEqual(validate.statements, (
            'ALTER TABLE "public"."reading" VALIDATE CONSTRAINT "fk_reading_station"',))

    def test_own_constraint_is_excluded_from_dependents(self):
        self.coordinator.reindex(obs_record())
        self.resolver.find_foreign_dependents.assert_called_once_with(16401, 16402)

    def test_primary_key_is_recreated_as_primary_key(self):
        self.resolver.resolve.return_value = IndexDefinition(
            oid=500, definition="CREATE UNIQUE INDEX station_pkey ON public.station USING btree (id)")
        self.resolver.find_backing_constraint.return_value = ConstraintInfo(
            oid=501, kind=ConstraintKind.PRIMARY_KEY, code="p")
        self.resolver.find_foreign_dependents.return_value = []

        plan = self.coordinator.plan(obs_record("station_pkey", "station"))

        self.assertEqual(plan.step_names(), ["clear_stale_temp", "build_concurrently", "swap_in"])
        self.assertEqual(plan.steps[2].statements, (
            'ALTER TABLE "public"."station" DROP CONSTRAINT "station_pkey", '
            'ADD CONSTRAINT "station_pkey" PRIMARY KEY USING INDEX "tmp_station_pkey"',))

    def test_deferrable_constraint_keeps_deferral(self):
        self.resolver.find_backing_constraint.return_value = ConstraintInfo(
            oid=16402, kind=ConstraintKind.UNIQUE, code="u", deferrable=True, initially_deferred=True)

        plan = self.coordinator.plan(obs_record())

        self.assertTrue(plan.steps[2].statements[1].endswith(
            'USING INDEX "tmp_idx_obs_station_time" DEFERRABLE INITIALLY DEFERRED'))

    def test_free_standing_index_is_dropped_and_renamed(self):
        self.resolver.resolve.return_value = IndexDefinition(
            oid=600, definition="CREATE INDEX idx_reading_time ON public.reading USING btree (obs_time)")
        self.resolver.find_backing_constraint.return_value = None
        self.resolver.find_foreign_dependents.return_value = []

        self.coordinator.reindex(obs_record("idx_reading_time", "reading"))

        self.resolver.find_foreign_dependents.assert_called_once_with(600, None)
        self.assertEqual(self.executor.statements, [
            'DROP INDEX IF EXISTS "public"."tmp_idx_reading_time"',
            'CREATE INDEX CONCURRENTLY "tmp_idx_reading_time" ON public.reading USING btree (obs_time)',
            'DROP INDEX IF EXISTS "public"."idx_reading_time"',
            'ALTER INDEX "public"."tmp_idx_reading_time" RENAME TO "idx_reading_time"',
        ])

    def test_partial_index_definition_is_preserved(self):
        self.resolver.resolve.return_value = IndexDefinition(
            oid=601,
            definition="CREATE INDEX idx_open ON public.ticket USING btree (opened_at) WHERE (closed_at IS NULL)")
        self.resolver.find_backing_constraint.return_value = None
        self.resolver.find_foreign_dependents.return_value = []

        plan = self.coordinator.plan(obs_record("idx_open", "ticket"))

        self.assertEqual(
            plan.steps[1].statements[0],
            'CREATE INDEX CONCURRENTLY "tmp_idx_open" ON public.ticket USING btree (opened_at) WHERE (closed_at IS NULL)')

    def test_all_dependent_foreign_keys_share_one_transaction(self):
        second = ForeignKeyDependent(
            name="fk_alert_station", table_name="alert", schema="ops", kind_code="f",
            definition="FOREIGN KEY (station_id, obs_time) REFERENCES public.observation(station_id, obs_time)")
        self.resolver.find_foreign_dependents.return_value = [fk_reading_station(), second]

        plan = self.coordinator.plan(obs_record())

        swap = plan.steps[2]
        self.assertEqual(len(swap.statements), 5)
        self.assertIn('ALTER TABLE "ops"."alert" DROP CONSTRAINT "fk_alert_station"', swap.statements[:2])
        self.assertEqual(len(plan.steps[3].statements), 2)

    def test_unvalidated_foreign_key_stays_unvalidated(self):
        self.resolver.find_foreign_dependents.return_value = [fk_reading_station(validated=False)]

        plan = self.coordinator.plan(obs_record())

        self.assertEqual(plan.step_names(), ["clear_stale_temp", "build_concurrently", "swap_in"])
        readd = plan.steps[2].statements[-1]
        self.assertTrue(readd.endswith("(station_id, obs_time) NOT VALID"))
        self.assertEqual(readd.count("NOT VALID"), 1)

    def test_long_index_name_uses_truncated_temp_name_everywhere(self):
        long_name = "idx_" + "x" * 59
        self.resolver.resolve.return_value = IndexDefinition(
            oid=700, definition=f"CREATE INDEX {long_name} ON public.reading USING btree (obs_time)")
        self.resolver.find_backing_constraint.return_value = None
        self.resolver.find_foreign_dependents.return_value = []

        plan = self.coordinator.plan(obs_record(long_name, "reading"))

        expected = ("tmp_" + long_name)[:63]
        self.assertEqual(plan.temp_name, expected)
        self.assertEqual(temp_index_name(long_name), expected)
        for statement in plan.statements[:2] + plan.statements[3:]:
            self.assertIn(f'"{expected}"', statement)

    def test_identifiers_with_quotes_are_escaped(self):
        self.resolver.resolve.return_value = IndexDefinition(
            oid=800, definition='CREATE INDEX "Odd""Name" ON public."Readings" USING btree (obs_time)')
        self.resolver.find_backing_constraint.return_value = None
        self.resolver.find_foreign_dependents.return_value = []

        plan = self.coordinator.plan(obs_record('Odd"Name', "Readings"))

        self.assertEqual(plan.steps[0].statements[0], 'DROP INDEX IF EXISTS "public"."tmp_Odd""Name"')
        self.assertEqual(
            plan.steps[1].statements[0],
            'CREATE INDEX CONCURRENTLY "tmp_Odd""Name" ON public."Readings" USING btree (obs_time)')

    def test_index_name_containing_on_is_split_after_the_name(self):
        self.resolver.resolve.return_value = IndexDefinition(
            oid=801, definition='CREATE INDEX "a ON b" ON public.t USING btree (x)')
        self.resolver.find_backing_constraint.return_value = None
        self.resolver.find_foreign_dependents.return_value = []

        plan = self.coordinator.plan(obs_record("a ON b", "t"))

        self.assertEqual(
            plan.steps[1].statements[0],
            'CREATE INDEX CONCURRENTLY "tmp_a ON b" ON public.t USING btree (x)')

    def test_keyword_index_name_printed_quoted(self):
        self.resolver.resolve.return_value = IndexDefinition(
            oid=802, definition='CREATE INDEX "user" ON public.t USING btree (x)')
        self.resolver.find_backing_constraint.return_value = None
        self.resolver.find_foreign_dependents.return_value = []

        plan = self.coordinator.plan(obs_record("user", "t"))

        self.assertEqual(plan.steps[1].statements[0], 'CREATE INDEX CONCURRENTLY "tmp_user" ON public.t USING btree (x)')

    def test_definition_for_another_name_is_unparsable(self):
        self.resolver.resolve.return_value = IndexDefinition(
            oid=803, definition='CREATE INDEX "a ON b" ON public.t USING btree (x)')

        with self.assertRaises(UnparsableDefinition):
            self.coordinator.plan(obs_record("a", "t"))
        self.assertEqual(self.executor.steps, [])

    def test_constraint_lookup_is_tied_to_the_index(self):
        self.coordinator.plan(obs_record())
        self.resolver.find_backing_constraint.assert_called_once_with(
            "public", "idx_obs_station_time", index_oid=16401)


class TestRebuildReturnValue(unittest.TestCase):
    def test_successful_ddl_rebuild_returns_zero_rows(self):
        resolver = MagicMock()
        resolver.resolve.return_value = IndexDefinition(
            oid=600, definition="CREATE INDEX idx_reading_time ON public.reading USING btree (obs_time)")
        resolver.find_backing_constraint.return_value = None
        resolver.find_foreign_dependents.return_value = []
        connector = MagicMock()
        connector.conn.closed = 0
        cursor = connector.conn.cursor.return_value.__enter__.return_value
        cursor.rowcount = -1

        coordinator = OnlineReindexCoordinator(connector, resolver=resolver)
        record = obs_record("idx_reading_time", "reading")

        self.assertEqual(coordinator.reindex(record), 0)
        self.assertEqual(cursor.execute.call_count, 4)
        connector.conn.commit.assert_called_once()
        self.assertEqual(coordinator.reindex_all([record])[record.qualified_name]['status'], 'rebuilt')


class TestReindexAborts(unittest.TestCase):
    def setUp(self):
        self.resolver = MagicMock()
        self.resolver.resolve.return_value = IndexDefinition(
            oid=16401,
            definition="CREATE UNIQUE INDEX idx_obs_station_time ON public.observation USING btree (station_id, obs_time)")
        self.resolver.find_backing_constraint.return_value = None
        self.resolver.find_foreign_dependents.return_value = []
        self.executor = RecordingExecutor()
        self.coordinator = OnlineReindexCoordinator(
            MagicMock(), resolver=self.resolver, executor=self.executor)

    def assertNothingExecuted(self):
        self.assertEqual(self.executor.steps, [])
        for statement in self.executor.statements:
            self.assertFalse(statement.startswith(DESTRUCTIVE_VERBS))

    def test_vanished_index_returns_zero(self):
        self.resolver.resolve.side_effect = NotFound('"public"."idx_obs_station_time"', "gone")

        with self.assertLogs('plugins.postgres.reindex_coordinator', level='WARNING'):
            self.assertEqual(self.coordinator.reindex(obs_record()), 0)
        self.assertNothingExecuted()

    def test_unparsable_definition_returns_zero_and_touches_nothing(self):
        self.resolver.resolve.return_value = IndexDefinition(oid=1, definition="something unexpected")

        with self.assertLogs('plugins.postgres.reindex_coordinator', level='WARNING') as logs:
            self.assertEqual(self.coordinator.reindex(obs_record()), 0)

        self.assertIn("Manual reindex required", logs.output[0])
        self.assertNothingExecuted()
        self.resolver.find_backing_constraint.assert_not_called()

    def test_unparsable_definition_raises_from_plan(self):
        self.resolver.resolve.return_value = IndexDefinition(oid=1, definition="garbage")
        with self.assertRaises(UnparsableDefinition):
            self.coordinator.plan(obs_record())

    def test_exclusion_constraint_is_refused(self):
        self.resolver.find_backing_constraint.return_value = ConstraintInfo(
            oid=9, kind=ConstraintKind.OTHER, code="x")

        with self.assertRaises(UnsupportedConstraintKind):
            self.coordinator.plan(obs_record())
        self.assertEqual(self.coordinator.reindex(obs_record()), 0)
        self.assertNothingExecuted()

    def test_non_foreign_key_dependent_is_refused(self):
        self.resolver.find_foreign_dependents.return_value = [ForeignKeyDependent(
            name="excl_obs", table_name="observation", schema="public",
            kind_code="x", definition="EXCLUDE USING btree (station_id WITH =)")]

        with self.assertRaises(UnsupportedDependentKind):
            self.coordinator.plan(obs_record())
        self.assertEqual(self.coordinator.reindex(obs_record()), 0)
        self.assertNothingExecuted()

    def test_execution_fault_propagates(self):
        self.executor.fail_on = "swap_in"

        with self.assertRaises(ExecutionFault) as ctx:
            self.coordinator.reindex(obs_record())

        self.assertEqual(ctx.exception.step_name, "swap_in")
        self.assertEqual(
            [s.name for s in self.executor.steps],
            ["clear_stale_temp", "build_concurrently", "swap_in"])

    def test_retry_after_build_failure_starts_by_clearing_temp(self):
        self.executor.fail_on = "build_concurrently"
        with self.assertRaises(ExecutionFault):
            self.coordinator.reindex(obs_record())

        retry = RecordingExecutor(rowcount=3)
        self.coordinator.executor = retry
        self.assertEqual(self.coordinator.reindex(obs_record()), 3)

        self.assertEqual(retry.steps[0].name, "clear_stale_temp")
        self.assertEqual(
            [s.statements for s in retry.steps],
            [s.statements for s in self.coordinator.plan(obs_record()).steps])


class TestReindexAll(unittest.TestCase):
    def test_results_per_index(self):
        resolver = MagicMock()
        good = IndexDefinition(oid=1, definition="CREATE INDEX idx_a ON public.a USING btree (x)")
        resolver.resolve.side_effect = [
            good,
            IndexDefinition(oid=2, definition="not an index"),
            IndexDefinition(oid=3, definition="CREATE INDEX idx_c ON public.c USING btree (x)"),
        ]
        resolver.find_backing_constraint.return_value = None
        resolver.find_foreign_dependents.return_value = []

        executor = MagicMock()
        executor.execute_plan.side_effect = [5, ExecutionFault("swap_in", "ALTER INDEX ...", Exception("lock timeout"))]
        coordinator = OnlineReindexCoordinator(MagicMock(), resolver=resolver, executor=executor)

        results = coordinator.reindex_all([
            obs_record("idx_a", "a"), obs_record("idx_b", "b"), obs_record("idx_c", "c")])

        self.assertEqual(results["public.idx_a"], {'status': 'rebuilt', 'rows': 5, 'error': None})
        self.assertEqual(results["public.idx_b"]['status'], 'skipped')
        self.assertEqual(results["public.idx_c"]['status'], 'failed')
        self.assertIn("lock timeout", results["public.idx_c"]['error'])

    def test_states_cover_every_handler(self):
        coordinator = OnlineReindexCoordinator(MagicMock(), resolver=MagicMock(), executor=MagicMock())
        handled = set(coordinator._handlers)
        self.assertEqual(handled | {ReindexState.DONE, ReindexState.FAILED}, set(ReindexState))


if __name__ == '__main__':
    unittest.main()
