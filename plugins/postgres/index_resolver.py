import logging

from plugins.postgres.errors import NotFound
from plugins.postgres.models import (
    ConstraintInfo, ConstraintKind, ForeignKeyDependent, IndexDefinition)
from plugins.postgres.utils.qrylib.index_dependencies import (
    constraint_info_query, index_definition_query, index_dependents_query)

logger = logging.getLogger(__name__)


class IndexDependencyResolver:
    """
    Catalog lookups needed before an index can be rebuilt.

    Results are never cached: the index may be dropped or altered between
    two reindex attempts.
    """

    def __init__(self, connector):
        self.connector = connector

    def resolve(self, schema, index_name):
        """Returns the IndexDefinition, or raises NotFound if it has vanished."""
        rows = self.connector.fetch_rows(
            index_definition_query(self.connector),
            {'name': index_name, 'schema': schema})

        row = rows[0] if rows else {}
        oid = row.get('oid')
        definition = row.get('indexdef')
        if oid is None or not definition:
            raise NotFound(
                f'"{schema}"."{index_name}"',
                "could not look up OID and definition for index")

        logger.info(f'Index definition for "{schema}"."{index_name}": {definition}')
        return IndexDefinition(oid=int(oid), definition=definition)

    def find_backing_constraint(self, schema, constraint_name, index_oid=None):
        """Returns the ConstraintInfo of the same name, or None for a free-standing index."""
        params = {'name': constraint_name, 'schema': schema}
        if index_oid is not None:
            params['conindid'] = index_oid
        rows = self.connector.fetch_rows(
            constraint_info_query(self.connector, by_index=index_oid is not None), params)
        if not rows:
            return None

        row = rows[0]
        code = str(row['contype'])
        return ConstraintInfo(
            oid=int(row['oid']),
            kind=ConstraintKind.from_code(code),
            code=code,
            deferrable=bool(row.get('condeferrable')),
            initially_deferred=bool(row.get('condeferred')),
        )

    def find_foreign_dependents(self, index_oid, exclude_constraint_oid=None):
        """Lists constraints anywhere in the database enforced through this index."""
        params = {'conindid': index_oid}
        exclude = exclude_constraint_oid is not None
        if exclude:
            params['conid'] = exclude_constraint_oid

        rows = self.connector.fetch_rows(
            index_dependents_query(self.connector, exclude_constraint=exclude), params)

        return [
            ForeignKeyDependent(
                name=row['fconname'],
                table_name=row['fconrelname'],
                schema=row['fconns'],
                kind_code=str(row['fcontype']),
                definition=row['fcondef'],
                validated=bool(row.get('fconvalidated', True)),
            )
            for row in rows
        ]
