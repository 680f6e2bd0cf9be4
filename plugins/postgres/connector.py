import psycopg2
import logging

from plugins.postgres.errors import BloatQueryError

logger = logging.getLogger(__name__)


class PostgresConnector:
    """
    Owns a single PostgreSQL session for bloat estimation and index rebuilds.

    The session runs in autocommit mode by default. Catalog lookups and
    statistics queries therefore take nothing beyond a snapshot read, and
    CREATE INDEX CONCURRENTLY can be issued without an ambient transaction.
    The DDL executor switches autocommit off only for the duration of a
    transactional plan step.
    """

    def __init__(self, settings):
        self.settings = settings
        self.conn = None
        self.cursor = None
        self.version_info = {}

    def connect(self):
        """Opens the session and records the server version."""
        # Index builds can run far longer than a typical statement timeout,
        # so the default here is 0 (disabled).
        timeout = self.settings.get('statement_timeout', 0)
        lock_timeout = self.settings.get('lock_timeout', 5000)

        try:
            self.conn = psycopg2.connect(
                host=self.settings['host'],
                port=self.settings['port'],
                dbname=self.settings['database'],
                user=self.settings['user'],
                password=self.settings['password'],
                connect_timeout=self.settings.get('connect_timeout', 10),
                options=f"-c statement_timeout={timeout} -c lock_timeout={lock_timeout}"
            )
            self.conn.autocommit = True
            self.cursor = self.conn.cursor()
            self.version_info = self._get_version_info()
        except psycopg2.Error as e:
            logger.error(f"Error connecting to PostgreSQL: {e}")
            raise

        logger.info(
            f"Connected to PostgreSQL {self.version_info.get('version_string', 'unknown')} "
            f"at {self.settings['host']}:{self.settings['port']}/{self.settings['database']}"
        )

    def disconnect(self):
        """Closes the session."""
        if self.conn and not self.conn.closed:
            self.conn.close()
            logger.info("Disconnected from PostgreSQL.")
        self.conn = None
        self.cursor = None

    def is_connected(self):
        return self.conn is not None and not self.conn.closed

    def _get_version_info(self):
        """Get PostgreSQL version information."""
        try:
            self.cursor.execute("SELECT current_setting('server_version_num');")
            version_num = int(self.cursor.fetchone()[0].strip())

            self.cursor.execute("SELECT current_setting('server_version');")
            version_string = self.cursor.fetchone()[0].strip()

            major_version = version_num // 10000

            return {
                'version_num': version_num,
                'version_string': version_string,
                'major_version': major_version,
                'is_pg12_or_newer': major_version >= 12,
            }
        except psycopg2.Error as e:
            logger.warning(f"Could not determine server version: {e}")
            return {
                'version_num': 0, 'version_string': 'unknown', 'major_version': 0,
                'is_pg12_or_newer': True,
            }

    def get_db_metadata(self):
        """Returns version and database name for report headers."""
        return {
            'version': self.version_info.get('version_string', 'N/A'),
            'db_name': self.settings.get('database', 'N/A'),
        }

    def fetch_rows(self, query, params=None):
        """Runs a read-only query and returns its rows as a list of dicts.

        Args:
            query: SQL query to execute
            params: Named query parameters

        Returns:
            list of dict: One dict per row keyed by column name. Empty when
            the query produced no rows or no result set.

        Raises:
            BloatQueryError: If the session is closed or the query fails.
        """
        if not self.is_connected():
            raise BloatQueryError("No open PostgreSQL session", query)

        if not self.cursor or self.cursor.closed:
            self.cursor = self.conn.cursor()

        try:
            self.cursor.execute(query, params)
            if self.cursor.description is None:
                return []
            columns = [desc[0] for desc in self.cursor.description]
            return [dict(zip(columns, row)) for row in self.cursor.fetchall()]
        except psycopg2.Error as e:
            if not self.conn.autocommit:
                self.conn.rollback()
            raise BloatQueryError(f"Query failed: {e}", query) from e
