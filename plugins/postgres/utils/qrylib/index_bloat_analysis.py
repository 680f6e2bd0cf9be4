# plugins/postgres/utils/qrylib/index_bloat_analysis.py

def index_bloat_query(connector):
    """
    Returns a query to estimate the amount of bloat in B-Tree indexes.
    This query is adapted from the pgsql-bloat-estimation project.
    Source: https://github.com/ioguix/pgsql-bloat-estimation

    Only valid btree indexes on ordinary tables outside the system schemas
    are considered, so an invalid leftover from an interrupted concurrent
    build is never reported.
    """
    return """
-- Original logic from https://github.com/ioguix/pgsql-bloat-estimation
WITH btree_indexes AS (
    SELECT
        n.nspname,
        tbl.relname AS tblname,
        idx.relname AS idxname,
        idx.reltuples,
        idx.relpages,
        i.indrelid,
        i.indexrelid,
        coalesce(substring(array_to_string(idx.reloptions, ' ') from 'fillfactor=([0-9]+)')::smallint, 90) AS fillfactor
    FROM pg_catalog.pg_index i
    JOIN pg_catalog.pg_class idx ON idx.oid = i.indexrelid
    JOIN pg_catalog.pg_class tbl ON tbl.oid = i.indrelid
    JOIN pg_catalog.pg_namespace n ON n.oid = idx.relnamespace
    JOIN pg_catalog.pg_am am ON am.oid = idx.relam
    WHERE am.amname = 'btree'
      AND i.indisvalid
      AND tbl.relkind = 'r'
      AND idx.relpages > 0
      AND n.nspname NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
),
column_stats AS (
    SELECT
        bi.nspname, bi.tblname, bi.idxname, bi.reltuples, bi.relpages, bi.indrelid AS table_oid, bi.fillfactor,
        current_setting('block_size')::numeric AS bs,
        CASE WHEN version() ~ 'mingw32' OR version() ~ '64-bit|x86_64|ppc64|ia64|amd64' THEN 8 ELSE 4 END AS maxalign,
        24 AS pagehdr,
        16 AS pageopqdata,
        -- IndexTupleData, plus the null bitmap when any key column is nullable
        CASE WHEN max(coalesce(s.null_frac, 0)) = 0 THEN 8 ELSE 8 + (( 32 + 8 - 1 ) / 8) END AS index_tuple_hdr_bm,
        sum( (1-coalesce(s.null_frac, 0)) * coalesce(s.avg_width, 1024)) AS nulldatawidth,
        max( CASE WHEN a.atttypid = 'pg_catalog.name'::regtype THEN 1 ELSE 0 END ) > 0 AS is_na
    FROM pg_catalog.pg_attribute a
    JOIN btree_indexes bi ON a.attrelid = bi.indexrelid
    -- stats come from the table for plain columns, from the index for expressions
    JOIN pg_catalog.pg_stats s ON s.schemaname = bi.nspname
        AND ((s.tablename = bi.tblname AND s.attname = pg_catalog.pg_get_indexdef(a.attrelid, a.attnum, TRUE))
          OR (s.tablename = bi.idxname AND s.attname = a.attname))
    WHERE a.attnum > 0
    GROUP BY 1, 2, 3, 4, 5, 6, 7
),
tuple_widths AS (
    SELECT *,
        (index_tuple_hdr_bm + maxalign - CASE WHEN index_tuple_hdr_bm%maxalign = 0 THEN maxalign ELSE index_tuple_hdr_bm%maxalign END
        + nulldatawidth + maxalign - CASE WHEN nulldatawidth = 0 THEN 0 WHEN nulldatawidth::integer%maxalign = 0 THEN maxalign ELSE nulldatawidth::integer%maxalign END
        )::numeric AS nulldatahdrwidth
    FROM column_stats
),
page_estimates AS (
    SELECT *,
        coalesce(1 + ceil(reltuples/floor((bs-pageopqdata-pagehdr)*fillfactor/(100*(4+nulldatahdrwidth)::float))), 0) AS est_pages_ff
    FROM tuple_widths
)
SELECT
    nspname AS schemaname,
    tblname,
    idxname,
    (bs*relpages)::bigint AS real_size,
    (bs*(relpages-est_pages_ff))::bigint AS bloat_size,
    100 * (relpages-est_pages_ff)::float / relpages AS bloat_ratio
FROM page_estimates
WHERE NOT is_na
ORDER BY bloat_size DESC, schemaname, tblname, idxname;
"""
