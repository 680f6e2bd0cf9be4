"""
Query library for the table bloat estimate.
"""


def table_bloat_query(connector):
    """
    Returns a query estimating heap + TOAST bloat for every ordinary table.
    Adapted from https://github.com/ioguix/pgsql-bloat-estimation

    pg_class.relhasoids is gone as of PostgreSQL 12, so the OID header term
    is only emitted for older servers.
    """
    if connector.version_info.get('is_pg12_or_newer', True):
        oid_header = ""
        oid_group = ""
    else:
        oid_header = "+ CASE WHEN tbl.relhasoids THEN 4 ELSE 0 END"
        oid_group = ", tbl.relhasoids"

    return f"""
-- Original logic from https://github.com/ioguix/pgsql-bloat-estimation
WITH table_stats AS (
    SELECT
        tbl.oid AS tblid,
        ns.nspname AS schemaname,
        tbl.relname AS tblname,
        tbl.reltuples,
        tbl.relpages AS heappages,
        coalesce(toast.relpages, 0) AS toastpages,
        coalesce(toast.reltuples, 0) AS toasttuples,
        coalesce(substring(array_to_string(tbl.reloptions, ' ') FROM 'fillfactor=([0-9]+)')::smallint, 100) AS fillfactor,
        current_setting('block_size')::numeric AS bs,
        CASE WHEN version()~'mingw32' OR version()~'64-bit|x86_64|ppc64|ia64|amd64' THEN 8 ELSE 4 END AS ma,
        24 AS page_hdr,
        23 + CASE WHEN MAX(coalesce(s.null_frac, 0)) > 0 THEN ( 7 + count(*) ) / 8 ELSE 0::int END
            {oid_header} AS tpl_hdr_size,
        sum( (1-coalesce(s.null_frac, 0)) * coalesce(s.avg_width, 1024) ) AS tpl_data_size,
        bool_or(att.atttypid = 'pg_catalog.name'::regtype) AS is_na
    FROM pg_attribute AS att
    JOIN pg_class AS tbl ON att.attrelid = tbl.oid
    JOIN pg_namespace AS ns ON ns.oid = tbl.relnamespace
    JOIN pg_stats AS s ON s.schemaname = ns.nspname
        AND s.tablename = tbl.relname AND s.inherited = false AND s.attname = att.attname
    LEFT JOIN pg_class AS toast ON tbl.reltoastrelid = toast.oid
    WHERE att.attnum > 0
      AND NOT att.attisdropped
      AND tbl.relkind = 'r'
      AND ns.nspname NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
    GROUP BY 1, 2, 3, 4, 5, 6, 7, 8, 9, 10{oid_group}
),
tuple_sizes AS (
    SELECT *,
        ( 4 + tpl_hdr_size + tpl_data_size + (2*ma)
            - CASE WHEN tpl_hdr_size%ma = 0 THEN ma ELSE tpl_hdr_size%ma END
            - CASE WHEN ceil(tpl_data_size)::int%ma = 0 THEN ma ELSE ceil(tpl_data_size)::int%ma END
        ) AS tpl_size,
        (heappages + toastpages) AS tblpages
    FROM table_stats
),
page_estimates AS (
    SELECT *,
        ceil( reltuples / ( (bs-page_hdr)*fillfactor/(tpl_size*100) ) ) + ceil( toasttuples / 4 ) AS est_tblpages_ff
    FROM tuple_sizes
)
SELECT
    schemaname,
    tblname,
    (bs*tblpages)::bigint AS real_size,
    ((tblpages-est_tblpages_ff)*bs)::bigint AS bloat_size,
    CASE WHEN tblpages > 0 AND tblpages - est_tblpages_ff > 0
        THEN 100 * (tblpages - est_tblpages_ff)/tblpages::float
        ELSE 0
    END AS bloat_ratio
FROM page_estimates
WHERE NOT is_na
ORDER BY bloat_size DESC, schemaname, tblname;
"""
