"""PostgreSQL connection pool and the Apache AGE graph repository.

DatabaseConnection owns one SQLAlchemy engine (QueuePool). GraphRepository
runs Cypher through ``ag_catalog.cypher()`` on a fresh pooled connection per
query and degrades to empty results whenever AGE is missing or a query fails,
so graph outages never break scoring.
"""

import logging
import time
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.pool import QueuePool

from .config_loader import DatabaseSettings, get_config
from .cypher_statements import build_cypher_sql, is_valid_label, prepare_cypher_query
from .db_result_helpers import extract_int_value, extract_string_value, flatten_value, result_value
from .exceptions import BackendUnavailableError, ValidationError

logger = logging.getLogger("database")


class DatabaseConnection:
    def __init__(self, settings: Optional[DatabaseSettings] = None):
        self.settings = settings or get_config().database
        self.url = self.settings.url
        self.schema = self.settings.schema_name
        self.engine = None

    def connect(self):
        if not self.engine:
            self.engine = create_engine(
                self.url,
                poolclass=QueuePool,
                pool_size=self.settings.pool_size,
                max_overflow=self.settings.max_overflow,
                pool_timeout=self.settings.pool_timeout,
                pool_pre_ping=self.settings.pool_pre_ping,
            )
        return self.engine

    def reconnect(self):
        """Force reconnection by disposing the pool and building a new engine."""
        if self.engine:
            try:
                self.engine.dispose()
            except SQLAlchemyError as e:
                logger.debug(f"Ignoring error while disposing engine: {e}")
            self.engine = None
        return self.connect()

    def close(self):
        if self.engine:
            self.engine.dispose()
            self.engine = None

    @contextmanager
    def connection(self):
        """Pooled connection without an explicit transaction (reads)."""
        with self.connect().connect() as conn:
            yield conn

    @contextmanager
    def transaction(self):
        """Pooled connection inside BEGIN ... COMMIT, rolled back on error."""
        with self.connect().begin() as conn:
            yield conn

    def execute_with_retry(self, query_func, max_retries=2):
        """Execute a query function with automatic retry on connection failure."""
        last_error = None
        for attempt in range(max_retries + 1):
            try:
                return query_func()
            except (OperationalError, InterfaceError) as e:
                last_error = e
                if attempt < max_retries:
                    logger.warning(f"Connection error (attempt {attempt + 1}), reconnecting: {e}")
                    self.reconnect()
                else:
                    raise
            except DBAPIError as e:
                if e.connection_invalidated and attempt < max_retries:
                    last_error = e
                    self.reconnect()
                else:
                    raise
        raise last_error

    def verify_connection(self) -> bool:
        """Round-trip ``SELECT 1`` through the pool."""
        def _query():
            with self.connection() as conn:
                return conn.execute(text("SELECT 1")).scalar() == 1
        t = time.time()
        ok = self._execute_quietly(_query)
        logger.info(f"Database connection check: {'ok' if ok else 'failed'} in {time.time() - t:.2f}s")
        return ok

    def _execute_quietly(self, query_func) -> bool:
        try:
            return bool(self.execute_with_retry(query_func))
        except SQLAlchemyError as e:
            logger.warning(f"Database unreachable: {e}")
            return False


# =============================================================================
# APACHE AGE GRAPH REPOSITORY
# =============================================================================

class GraphRepository:
    """Cypher execution against one Apache AGE graph.

    Every query gets its own pooled connection and re-runs the AGE session
    setup (``LOAD 'age'`` and ``SET search_path``) because pooled
    connections carry no guarantee about earlier session state.
    """

    def __init__(self, db: DatabaseConnection, graph_name: Optional[str] = None,
                 search_path: Optional[list[str]] = None):
        graph_settings = get_config().graph if graph_name is None or search_path is None else None
        self.db = db
        self.graph_name = graph_name or graph_settings.name
        self.search_path = search_path or graph_settings.search_path
        if not is_valid_label(self.graph_name):
            raise ValidationError(f"Invalid graph name: {self.graph_name!r}", field="graph_name")

    # -------------------------------------------------------------------------
    # Graph lifecycle
    # -------------------------------------------------------------------------

    def graph_exists(self) -> bool:
        """False when the graph is absent or AGE is not installed."""
        try:
            with self.db.connection() as conn:
                count = conn.execute(
                    text("SELECT COUNT(*) FROM ag_catalog.ag_graph WHERE name = :graph_name"),
                    {"graph_name": self.graph_name},
                ).scalar()
            return bool(count)
        except SQLAlchemyError as e:
            logger.debug(f"Graph check failed (AGE may not be available): {e}")
            return False

    def create_graph_if_not_exists(self) -> None:
        """Create the graph once; never raises."""
        if self.graph_exists():
            logger.debug(f"Graph '{self.graph_name}' already exists, skipping creation")
            return
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    text("SELECT * FROM ag_catalog.create_graph(CAST(:graph_name AS name))"),
                    {"graph_name": self.graph_name},
                )
            logger.info(f"Graph '{self.graph_name}' created")
        except SQLAlchemyError as e:
            if "already exists" in str(e):
                logger.debug(f"Graph '{self.graph_name}' already exists (detected during creation)")
                return
            logger.warning(f"Failed to create graph '{self.graph_name}': {e}")

    def ensure_graph_exists(self) -> None:
        self.create_graph_if_not_exists()

    # -------------------------------------------------------------------------
    # Cypher execution
    # -------------------------------------------------------------------------

    def _prepare_session(self, conn) -> None:
        """LOAD 'age' and set search_path on this connection."""
        try:
            with conn.begin_nested():
                conn.exec_driver_sql("LOAD 'age'")
        except DBAPIError as e:
            # Fine when age is in shared_preload_libraries
            logger.debug(f"LOAD 'age' failed: {e}")
        try:
            with conn.begin_nested():
                conn.exec_driver_sql(f"SET search_path = {', '.join(self.search_path)}")
        except DBAPIError as e:
            raise BackendUnavailableError(
                f"Could not set AGE search_path: {e}", details={"graph": self.graph_name}
            ) from e

    @staticmethod
    def _collect_rows(result) -> list[dict]:
        """Read every column as text, dropping NULLs and empty rows."""
        columns = list(result.keys())
        rows = []
        for record in result:
            row = {}
            for column, value in zip(columns, record):
                if value is None:
                    continue
                try:
                    row[column] = value if isinstance(value, str) else str(value)
                except (TypeError, ValueError) as e:
                    logger.debug(f"Failed to read column {column}: {e}")
            if row:
                rows.append(row)
        return rows

    def execute_cypher(self, cypher_query: str, parameters: Optional[dict] = None) -> list[dict]:
        """Run a Cypher query; rows map column alias (``c`` or ``c0..cN``) to raw agtype text.

        Blank query text raises ValidationError. Any backend failure is
        logged and returns ``[]``; writes also return ``[]``.
        """
        if cypher_query is None or not cypher_query.strip():
            raise ValidationError("Cypher query must not be blank", field="cypher_query")
        parameters = parameters or {}

        self.ensure_graph_exists()

        try:
            statement = build_cypher_sql(self.graph_name, prepare_cypher_query(cypher_query, parameters))
            logger.debug(f"Executing Cypher SQL: {statement.sql}")

            try:
                with self.db.transaction() as conn:
                    # cursor.execute(sql) with no parameter list, so '%' in literals stays literal
                    conn = conn.execution_options(no_parameters=True)
                    self._prepare_session(conn)
                    result = conn.exec_driver_sql(statement.sql)
                    if statement.is_mutation:
                        logger.info("Executed CREATE/MERGE operation")
                        return []
                    rows = self._collect_rows(result)
            except (OperationalError, InterfaceError) as e:
                raise BackendUnavailableError(
                    f"Graph backend unavailable: {e}", details={"graph": self.graph_name}
                ) from e

            logger.debug(f"Cypher returned {len(rows)} rows")
            return rows
        except BackendUnavailableError as e:
            logger.warning(f"{e.message}")
            return []
        except (SQLAlchemyError, ValueError) as e:
            logger.error(f"Error executing Cypher query: {e}", exc_info=True)
            return []

    def execute_cypher_and_extract(self, cypher_query: str, parameters: Optional[dict],
                                   result_field: str) -> list[str]:
        """Distinct string values of one field across result rows, in order."""
        values = []
        for row in self.execute_cypher(cypher_query, parameters):
            value = row.get(result_field)
            if value is None:
                nested = row.get("result")
                if isinstance(nested, dict):
                    value = nested.get(result_field)
                elif isinstance(nested, str):
                    value = flatten_value(nested).get(result_field)
            value = extract_string_value(value)
            if value is not None and value not in values:
                values.append(value)
        return values

    # -------------------------------------------------------------------------
    # Graph catalogue
    # -------------------------------------------------------------------------

    def _distinct_types(self, cypher_query: str) -> list[str]:
        if not self.graph_exists():
            return []
        types = []
        for row in self.execute_cypher(cypher_query):
            type_name = extract_string_value(row.get("c") or row.get("type"))
            if type_name:
                types.append(type_name)
        return types

    def get_distinct_vertex_types(self) -> list[str]:
        return self._distinct_types("MATCH (v) RETURN DISTINCT label(v) as type")

    def get_distinct_edge_types(self) -> list[str]:
        return self._distinct_types("MATCH ()-[e]->() RETURN DISTINCT type(e) as type")

    def _count(self, label: str, pattern: str) -> Optional[int]:
        if not is_valid_label(label):
            raise ValidationError(f"Invalid graph label: {label!r}", field="label")
        if not self.graph_exists():
            return None
        rows = self.execute_cypher(pattern.format(label=label))
        return extract_int_value(result_value(rows, "c", fallback_key="cnt"))

    def count_vertices_by_type(self, label: str) -> Optional[int]:
        return self._count(label, "MATCH (v:{label}) RETURN count(v) as cnt")

    def count_edges_by_type(self, label: str) -> Optional[int]:
        return self._count(label, "MATCH ()-[e:{label}]->() RETURN count(e) as cnt")

    def get_edges(self, limit: int = 100) -> list[dict]:
        """Edges with their endpoints as ``{"source", "edge", "target"}`` dicts."""
        if not self.graph_exists():
            return []
        rows = self.execute_cypher(
            f"MATCH (a)-[e]->(b) RETURN a as source, e as edge, b as target LIMIT {int(limit)}"
        )
        return [
            {
                "source": flatten_value(row.get("c0")),
                "edge": flatten_value(row.get("c1")),
                "target": flatten_value(row.get("c2")),
            }
            for row in rows
        ]

    def get_vertices(self, limit: int = 100, vertex_type: Optional[str] = None) -> list[dict]:
        if vertex_type is not None and not is_valid_label(vertex_type):
            raise ValidationError(f"Invalid graph label: {vertex_type!r}", field="vertex_type")
        if not self.graph_exists():
            return []
        pattern = f"(v:{vertex_type})" if vertex_type else "(v)"
        rows = self.execute_cypher(f"MATCH {pattern} RETURN v LIMIT {int(limit)}")
        return [flatten_value(row["c"]) for row in rows if "c" in row]
