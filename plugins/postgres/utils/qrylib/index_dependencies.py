"""
Query library for resolving an index and the constraints that rely on it.
All queries take psycopg2 named parameters.
"""


def index_definition_query(connector):
    """Returns the oid and CREATE INDEX text for an index, by name and schema."""
    return """
        SELECT
            idx.oid,
            pg_catalog.pg_get_indexdef(idx.oid) AS indexdef
        FROM pg_catalog.pg_class idx
        JOIN pg_catalog.pg_namespace ns ON ns.oid = idx.relnamespace
        WHERE idx.relname = %(name)s
          AND ns.nspname = %(schema)s
          AND idx.relkind = 'i';
    """


def constraint_info_query(connector, by_index=False):
    """
    Returns the index-owning constraint of the given name in the schema.

    Constraint names are only unique per table, and a foreign key may share
    its name with the index it references, so only kinds that own an index
    are considered. With by_index the constraint must also use that index.
    """
    index_filter = "AND con.conindid = %(conindid)s" if by_index else ""
    return f"""
        SELECT
            con.oid,
            con.contype,
            con.condeferrable,
            con.condeferred
        FROM pg_catalog.pg_constraint con
        JOIN pg_catalog.pg_namespace ns ON ns.oid = con.connamespace
        WHERE con.conname = %(name)s
          AND ns.nspname = %(schema)s
          AND con.contype IN ('p', 'u', 'x')
          {index_filter}
        ORDER BY con.contype, con.oid;
    """


def index_dependents_query(connector, exclude_constraint=False):
    """
    Returns every constraint whose enforcement uses the given index.

    A primary key or unique constraint reports its own backing index in
    conindid, so the caller excludes that constraint by oid.
    """
    exclusion = "AND fcon.oid <> %(conid)s" if exclude_constraint else ""
    return f"""
        SELECT
            fcon.conname AS fconname,
            fconrel.relname AS fconrelname,
            fconns.nspname AS fconns,
            fcon.contype AS fcontype,
            pg_catalog.pg_get_constraintdef(fcon.oid) AS fcondef,
            fcon.convalidated AS fconvalidated
        FROM pg_catalog.pg_constraint fcon
        JOIN pg_catalog.pg_class fconrel ON fcon.conrelid = fconrel.oid
        JOIN pg_catalog.pg_namespace fconns ON fcon.connamespace = fconns.oid
        WHERE fcon.conindid = %(conindid)s
          {exclusion}
        ORDER BY fconns.nspname, fconrel.relname, fcon.conname;
    """
