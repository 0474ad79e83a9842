"""GraphRepository / DatabaseConnection tests against a mocked SQLAlchemy connection.

The mock mirrors what the repository touches:
  - db.connection()  -> read connection (graph existence checks)
  - db.transaction() -> connection used for Cypher (exec_driver_sql)
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError

from medexpertmatch.config_loader import DatabaseSettings
from medexpertmatch.database import DatabaseConnection, GraphRepository
from medexpertmatch.exceptions import ValidationError
from medexpertmatch.logic.graph_queries import GraphQueryService

GRAPH = "test_graph"
SEARCH_PATH = ["ag_catalog", '"$user"', "public"]
VERTEX = '{"id": 1, "label": "Doctor", "properties": {"id": "doc-1"}}::vertex'
EDGE = '{"id": 2, "label": "TREATED", "end_id": 3, "start_id": 1, "properties": {}}::edge'
CASE_VERTEX = '{"id": 3, "label": "MedicalCase", "properties": {"id": "c1"}}::vertex'


def _make_db(rows=None, columns=("c",), graph_count=1, cypher_error=None, setup_errors=None):
    """Mock DatabaseConnection returning ``rows`` for every Cypher statement."""
    db = MagicMock()
    read_conn = MagicMock()
    read_conn.execute.return_value.scalar.return_value = graph_count
    db.connection.return_value.__enter__.return_value = read_conn

    conn = MagicMock()
    conn.execution_options.return_value = conn
    setup_errors = setup_errors or {}

    def _exec(sql, *args, **kwargs):
        if sql.startswith("SELECT * FROM ag_catalog.cypher"):
            if cypher_error:
                raise cypher_error
            result = MagicMock()
            result.keys.return_value = list(columns)
            result.__iter__.return_value = iter(list(rows or []))
            return result
        for prefix, error in setup_errors.items():
            if sql.startswith(prefix):
                raise error
        return MagicMock()

    conn.exec_driver_sql.side_effect = _exec
    db.transaction.return_value.__enter__.return_value = conn
    return db, conn


def _executed_sql(conn) -> list[str]:
    return [c.args[0] for c in conn.exec_driver_sql.call_args_list]


def _repo(db) -> GraphRepository:
    return GraphRepository(db, graph_name=GRAPH, search_path=SEARCH_PATH)


# =============================================================================
# EXECUTE CYPHER
# =============================================================================

class TestExecuteCypher:
    def test_blank_query_rejected_before_io(self):
        db, _ = _make_db()
        repo = _repo(db)
        for blank in ("", "   ", None):
            with pytest.raises(ValidationError):
                repo.execute_cypher(blank)
        db.connection.assert_not_called()
        db.transaction.assert_not_called()

    def test_rows_keep_raw_text_under_c(self):
        db, _ = _make_db(rows=[("3",)])
        rows = _repo(db).execute_cypher(
            "MATCH (d:Doctor {id: $doctorId}) RETURN count(*)", {"doctorId": "doc-1"}
        )
        assert rows == [{"c": "3"}]

    def test_parameters_embedded_into_statement(self):
        db, conn = _make_db(rows=[("1",)])
        _repo(db).execute_cypher("MATCH (d:Doctor {id: $doctorId}) RETURN count(*)", {"doctorId": "O'Neil"})
        cypher_sql = [s for s in _executed_sql(conn) if "ag_catalog.cypher" in s][0]
        assert "{id: 'O\\'Neil'}" in cypher_sql
        assert cypher_sql.startswith(f"SELECT * FROM ag_catalog.cypher('{GRAPH}'::name, $query$")
        conn.execution_options.assert_called_with(no_parameters=True)

    def test_session_setup_runs_on_every_query(self):
        db, conn = _make_db(rows=[("1",)])
        repo = _repo(db)
        repo.execute_cypher("MATCH (n) RETURN count(n)")
        repo.execute_cypher("MATCH (n) RETURN count(n)")
        executed = _executed_sql(conn)
        assert executed.count("LOAD 'age'") == 2
        assert executed.count('SET search_path = ag_catalog, "$user", public') == 2
        assert db.transaction.call_count == 2

    def test_null_columns_and_empty_rows_dropped(self):
        db, _ = _make_db(rows=[(VERTEX, None), (None, None)], columns=("c0", "c1"))
        rows = _repo(db).execute_cypher("MATCH (a)-[e]->(b) RETURN a, e")
        assert rows == [{"c0": VERTEX}]

    def test_mutation_returns_empty_list(self):
        db, conn = _make_db(rows=[("'success'",)])
        assert _repo(db).execute_cypher("CREATE (d:Doctor {id: $id})", {"id": "doc-9"}) == []
        assert any("RETURN 'success'" in s for s in _executed_sql(conn))

    @pytest.mark.parametrize("value", ["Emergency Medicine", "recreated-doc"])
    def test_read_with_keyword_like_parameter_returns_rows(self, value):
        db, _ = _make_db(rows=[("2",)])
        rows = _repo(db).execute_cypher("MATCH (d:Doctor {id: $doctorId}) RETURN count(*)", {"doctorId": value})
        assert rows == [{"c": "2"}]

    def test_specialization_score_for_emergency_medicine(self):
        db, _ = _make_db(rows=[("1",)])
        service = GraphQueryService(_repo(db))
        assert service.specialization_match_score("doc-1", "Emergency Medicine") == 1.0

    def test_driver_failure_returns_empty_list(self):
        error = ProgrammingError("SELECT", {}, Exception("syntax error at or near"))
        db, _ = _make_db(cypher_error=error)
        assert _repo(db).execute_cypher("MATCH (n) RETURN n") == []

    def test_connection_failure_returns_empty_list(self, caplog):
        error = OperationalError("SELECT", {}, Exception("server closed the connection"))
        db, _ = _make_db(cypher_error=error)
        with caplog.at_level("WARNING", logger="database"):
            assert _repo(db).execute_cypher("MATCH (n) RETURN n") == []
        assert "unavailable" in caplog.text

    def test_load_failure_tolerated(self):
        db, _ = _make_db(rows=[("1",)], setup_errors={"LOAD": DBAPIError("LOAD", {}, Exception("denied"))})
        assert _repo(db).execute_cypher("MATCH (n) RETURN count(n)") == [{"c": "1"}]

    def test_search_path_failure_degrades_to_empty(self):
        db, _ = _make_db(rows=[("1",)], setup_errors={"SET": DBAPIError("SET", {}, Exception("no schema"))})
        assert _repo(db).execute_cypher("MATCH (n) RETURN count(n)") == []

    def test_extract_distinct_values(self):
        db, _ = _make_db(rows=[('"a"',), ('"a"',), ('"b"',)])
        values = _repo(db).execute_cypher_and_extract("MATCH (d:Doctor) RETURN d.id", {}, "c")
        assert values == ["a", "b"]


# =============================================================================
# GRAPH LIFECYCLE
# =============================================================================

class TestGraphLifecycle:
    def test_graph_exists(self):
        db, _ = _make_db(graph_count=1)
        assert _repo(db).graph_exists() is True

    def test_graph_missing(self):
        db, _ = _make_db(graph_count=0)
        assert _repo(db).graph_exists() is False

    def test_graph_exists_false_when_age_unavailable(self):
        db, _ = _make_db()
        db.connection.side_effect = ProgrammingError("SELECT", {}, Exception('schema "ag_catalog" does not exist'))
        assert _repo(db).graph_exists() is False

    def test_create_graph_when_missing(self):
        db, conn = _make_db(graph_count=0)
        _repo(db).create_graph_if_not_exists()
        statements = [str(c.args[0]) for c in conn.execute.call_args_list]
        assert any("ag_catalog.create_graph" in s for s in statements)

    def test_create_graph_skipped_when_present(self):
        db, conn = _make_db(graph_count=1)
        _repo(db).ensure_graph_exists()
        conn.execute.assert_not_called()

    def test_create_graph_race_is_swallowed(self):
        db, conn = _make_db(graph_count=0)
        conn.execute.side_effect = ProgrammingError("SELECT", {}, Exception('graph "test_graph" already exists'))
        _repo(db).create_graph_if_not_exists()

    def test_create_graph_other_failure_logged_not_raised(self, caplog):
        db, conn = _make_db(graph_count=0)
        conn.execute.side_effect = OperationalError("SELECT", {}, Exception("permission denied"))
        with caplog.at_level("WARNING", logger="database"):
            _repo(db).create_graph_if_not_exists()
        assert "Failed to create graph" in caplog.text

    def test_invalid_graph_name_rejected(self):
        db, _ = _make_db()
        with pytest.raises(ValidationError):
            GraphRepository(db, graph_name="bad name", search_path=SEARCH_PATH)


# =============================================================================
# GRAPH CATALOGUE
# =============================================================================

class TestGraphCatalogue:
    def test_distinct_vertex_types(self):
        db, _ = _make_db(rows=[('"Doctor"',), ('"MedicalCase"',)])
        assert _repo(db).get_distinct_vertex_types() == ["Doctor", "MedicalCase"]

    def test_distinct_edge_types_empty_without_graph(self):
        db, conn = _make_db(graph_count=0)
        assert _repo(db).get_distinct_edge_types() == []
        conn.exec_driver_sql.assert_not_called()

    def test_count_vertices_by_type(self):
        db, conn = _make_db(rows=[("5",)])
        assert _repo(db).count_vertices_by_type("Doctor") == 5
        assert any("MATCH (v:Doctor) RETURN count(v)" in s for s in _executed_sql(conn))

    def test_count_edges_none_without_graph(self):
        db, _ = _make_db(graph_count=0)
        assert _repo(db).count_edges_by_type("TREATED") is None

    def test_count_none_when_no_rows(self):
        db, _ = _make_db(rows=[])
        assert _repo(db).count_edges_by_type("TREATED") is None

    def test_count_rejects_injection_label(self):
        db, _ = _make_db()
        with pytest.raises(ValidationError):
            _repo(db).count_vertices_by_type("Doctor) DETACH DELETE (v")

    def test_get_edges(self):
        db, _ = _make_db(rows=[(VERTEX, EDGE, CASE_VERTEX)], columns=("c0", "c1", "c2"))
        edges = _repo(db).get_edges(limit=5)
        assert len(edges) == 1
        assert edges[0]["source"]["label"] == "Doctor"
        assert edges[0]["edge"]["label"] == "TREATED"
        assert edges[0]["target"]["properties"] == {"id": "c1"}

    def test_get_vertices_by_type(self):
        db, conn = _make_db(rows=[(VERTEX,)])
        vertices = _repo(db).get_vertices(limit=10, vertex_type="Doctor")
        assert vertices[0]["id"] == 1
        assert any("MATCH (v:Doctor) RETURN v LIMIT 10" in s for s in _executed_sql(conn))


# =============================================================================
# CONNECTION RETRY
# =============================================================================

class TestDatabaseConnection:
    def test_retry_reconnects_on_connection_error(self):
        db = DatabaseConnection(DatabaseSettings())
        db.reconnect = MagicMock()
        calls = {"n": 0}

        def _query():
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("SELECT 1", {}, Exception("connection reset"))
            return "ok"

        assert db.execute_with_retry(_query) == "ok"
        db.reconnect.assert_called_once()

    def test_retry_gives_up(self):
        db = DatabaseConnection(DatabaseSettings())
        db.reconnect = MagicMock()

        def _query():
            raise OperationalError("SELECT 1", {}, Exception("down"))

        with pytest.raises(OperationalError):
            db.execute_with_retry(_query, max_retries=1)
        assert db.reconnect.call_count == 1

    def test_non_connection_errors_not_retried(self):
        db = DatabaseConnection(DatabaseSettings())
        db.reconnect = MagicMock()

        def _query():
            raise ProgrammingError("SELECT", {}, Exception("bad sql"))

        with pytest.raises(ProgrammingError):
            db.execute_with_retry(_query)
        db.reconnect.assert_not_called()

    def test_verify_connection(self):
        db = DatabaseConnection(DatabaseSettings())
        engine = MagicMock()
        engine.connect.return_value.__enter__.return_value.execute.return_value.scalar.return_value = 1
        db.connect = MagicMock(return_value=engine)
        assert db.verify_connection() is True

    def test_verify_connection_unreachable(self):
        db = DatabaseConnection(DatabaseSettings())
        db.reconnect = MagicMock()
        db.connect = MagicMock(side_effect=OperationalError("connect", {}, Exception("refused")))
        assert db.verify_connection() is False
