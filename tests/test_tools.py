"""Tests for the Gateway operations and tool dispatch."""

from unittest.mock import MagicMock

import pytest

from sqlgate.core.config import ResolvedConfig
from sqlgate.core.exceptions import ExecutionError, InputError, NotFoundError, ValidationError
from sqlgate.core.tools import TOOL_DEFINITIONS, Gateway, tool_error
from tests.fakes import FakeFactory, column


def _orders(n):
    return ([column("id"), column("total", 1700)], [(i, f"{i}.00") for i in range(1, n + 1)])


@pytest.fixture
def gateway_for(make_pool, resolved_config):
    """Gateway over a pool whose connections replay the given results."""

    def build(*results, config=None):
        factory = FakeFactory(list(results))
        pool = make_pool(factory)
        gateway = Gateway(config or resolved_config, pool=pool, logger=MagicMock())
        return gateway, factory

    return build


@pytest.mark.unit
class TestToolDefinitions:
    def test_three_tools(self):
        assert [t["name"] for t in TOOL_DEFINITIONS] == [
            "list_tables",
            "get_table_schema",
            "execute_query",
        ]

    def test_required_arguments(self):
        by_name = {t["name"]: t["inputSchema"] for t in TOOL_DEFINITIONS}
        assert "required" not in by_name["list_tables"]
        assert by_name["get_table_schema"]["required"] == ["table_name"]
        assert by_name["execute_query"]["required"] == ["query"]
        assert by_name["execute_query"]["properties"]["max_rows"]["default"] == 10000


@pytest.mark.unit
class TestToolError:
    def test_validation_prefix(self):
        payload = tool_error(ValidationError("forbidden keyword: DROP"))
        assert payload == {
            "isError": True,
            "kind": "validation",
            "message": "forbidden keyword: DROP",
            "text": "Security Error: forbidden keyword: DROP",
        }

    def test_other_prefix(self):
        payload = tool_error(NotFoundError("Table not found: x"))
        assert payload["kind"] == "not_found"
        assert payload["text"] == "Error: Table not found: x"


@pytest.mark.unit
class TestOperations:
    def test_execute_query_truncated(self, gateway_for):
        gateway, _ = gateway_for(_orders(5))
        payload = gateway.execute_query("SELECT * FROM orders", max_rows=2)
        assert payload["rowCount"] == 2
        assert payload["truncated"] is True
        assert payload["message"] == "Results limited to 2 rows"
        assert payload["columns"] == ["id", "total"]
        assert payload["rows"][0] == {"id": 1, "total": "1.00"}

    def test_execute_query_uses_configured_default(self, gateway_for):
        config = ResolvedConfig(default_max_rows=3)
        gateway, _ = gateway_for(_orders(5), config=config)
        assert gateway.execute_query("SELECT * FROM orders")["rowCount"] == 3

    def test_execute_query_uses_statement_timeout(self, gateway_for):
        config = ResolvedConfig(statement_timeout=1.5)
        gateway, factory = gateway_for(_orders(1), config=config)
        gateway.execute_query("SELECT * FROM orders")
        statements = [sql for sql, _ in factory.created[0].executed]
        assert "SET LOCAL statement_timeout = 1500" in statements

    def test_execute_query_bad_max_rows(self, gateway_for):
        gateway, _ = gateway_for()
        with pytest.raises(InputError, match="Invalid query arguments"):
            gateway.execute_query("SELECT 1", max_rows=0)

    def test_list_tables_payload(self, gateway_for):
        gateway, _ = gateway_for(([], [("orders", "sales", None)]))
        assert gateway.list_tables() == {
            "tables": [{"name": "orders", "schema": "sales", "type": "TABLE"}],
            "count": 1,
        }

    def test_get_table_schema_payload(self, gateway_for):
        gateway, _ = gateway_for(([], [("id",)]), ([], [("id", "int4", 32, False, None)]))
        assert gateway.get_table_schema("sales.orders") == {
            "tableName": "sales.orders",
            "columnCount": 1,
            "columns": [
                {"name": "id", "type": "int4", "size": 32, "nullable": False, "primaryKey": True}
            ],
        }

    def test_health(self, gateway_for):
        gateway, _ = gateway_for()
        report = gateway.health()
        assert report["healthy"] is True
        assert report["pool"]["capacity"] == 5
        assert report["summary"].startswith("Pool Stats - Active: 0")

    def test_context_manager_closes_pool(self, gateway_for):
        gateway, _ = gateway_for()
        with gateway:
            pass
        assert gateway.pool.closed


@pytest.mark.unit
class TestCall:
    def test_execute_query_success(self, gateway_for):
        gateway, _ = gateway_for(_orders(3))
        payload = gateway.call("execute_query", {"query": "SELECT * FROM orders"})
        assert payload["rowCount"] == 3
        assert "isError" not in payload

    def test_float_max_rows_accepted(self, gateway_for):
        gateway, _ = gateway_for(_orders(3))
        payload = gateway.call("execute_query", {"query": "SELECT * FROM orders", "max_rows": 2.0})
        assert payload["rowCount"] == 2

    def test_denial_is_security_error(self, gateway_for):
        gateway, factory = gateway_for()
        payload = gateway.call("execute_query", {"query": "DELETE FROM orders"})
        assert payload["isError"] is True
        assert payload["kind"] == "validation"
        assert payload["text"].startswith("Security Error: ")
        assert factory.created == []

    def test_blank_query_denied_by_classifier(self, gateway_for):
        gateway, _ = gateway_for()
        payload = gateway.call("execute_query", {"query": "  "})
        assert payload["kind"] == "validation"
        assert payload["message"] == "empty query"

    @pytest.mark.parametrize(
        ("arguments", "message"),
        [
            ({}, "query is required"),
            ({"query": 5}, "query is required"),
            ({"query": "SELECT 1", "max_rows": "10"}, "max_rows must be an integer"),
            ({"query": "SELECT 1", "max_rows": True}, "max_rows must be an integer"),
        ],
    )
    def test_execute_query_bad_arguments(self, gateway_for, arguments, message):
        gateway, _ = gateway_for()
        payload = gateway.call("execute_query", arguments)
        assert payload["kind"] == "input"
        assert payload["message"] == message

    def test_missing_table_name(self, gateway_for):
        gateway, _ = gateway_for()
        payload = gateway.call("get_table_schema", {})
        assert payload["kind"] == "input"
        assert payload["text"] == "Error: table_name is required"

    def test_table_not_found(self, gateway_for):
        gateway, _ = gateway_for(([], []))
        payload = gateway.call("get_table_schema", {"table_name": "no_such_table"})
        assert payload["kind"] == "not_found"
        assert payload["message"] == "Table not found: no_such_table"

    def test_list_tables_without_arguments(self, gateway_for):
        gateway, _ = gateway_for(([], [("orders", "public", None)]))
        assert gateway.call("list_tables")["count"] == 1

    def test_list_tables_bad_schema(self, gateway_for):
        gateway, _ = gateway_for()
        assert gateway.call("list_tables", {"schema": 3})["kind"] == "input"

    def test_unknown_tool(self, gateway_for):
        gateway, _ = gateway_for()
        payload = gateway.call("drop_everything", {})
        assert payload["kind"] == "input"
        assert payload["message"] == "Unknown tool: drop_everything"

    def test_execution_error_payload(self, gateway_for):
        gateway, _ = gateway_for()
        gateway.executor.execute = MagicMock(side_effect=ExecutionError("SQL error: boom"))
        payload = gateway.call("execute_query", {"query": "SELECT 1"})
        assert payload["kind"] == "execution"
        assert payload["text"] == "Error: SQL error: boom"
