# This file defines the structure and execution order of the bloat report.

REPORT_SECTIONS = [
    {
        'title': 'Storage Bloat',
        'actions': [
            {'type': 'module', 'module': 'plugins.postgres.checks.table_bloat_analysis', 'function': 'run_table_bloat_analysis'},
            {'type': 'module', 'module': 'plugins.postgres.checks.index_bloat_analysis', 'function': 'run_index_bloat_analysis'},
        ]
    },
]
