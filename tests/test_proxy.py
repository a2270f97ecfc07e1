"""Tests for the call proxy."""

from __future__ import annotations

from pathlib import Path

import pytest

from pgbalance import proxy as proxy_module
from pgbalance.connections import DatabaseConnectionError, DriverError
from pgbalance.models import FAILURE, DestinationClass, ErrorPolicy, FetchMode, Operation
from pgbalance.proxy import DatabaseProxy, ParameterCountWarning, get_instance, reset_instance


@pytest.fixture
def balanced(driver, selector, balanced_config) -> DatabaseProxy:  # type: ignore[no-untyped-def]
    return DatabaseProxy(balanced_config, driver=driver, selector=selector)


@pytest.fixture
def single(driver, single_config) -> DatabaseProxy:  # type: ignore[no-untyped-def]
    return DatabaseProxy(single_config, driver=driver)


def _last_call(driver):  # type: ignore[no-untyped-def]
    return driver.connections[-1].calls[-1]


def test_reads_go_to_a_slave_and_writes_to_the_master(balanced, driver) -> None:  # type: ignore[no-untyped-def]
    rows = balanced.get_all("SELECT * FROM accounts")
    assert balanced.destination is DestinationClass.SLAVE
    assert driver.hosts() == ["db-replica-1"]

    balanced.execute("UPDATE accounts SET status = 'active'")

    assert balanced.destination is DestinationClass.MASTER
    assert driver.hosts() == ["db-replica-1", "db-master"]
    assert rows == [{"id": 1, "email": "alice@example.com"}, {"id": 2, "email": "bob@example.com"}]


def test_next_query_in_master_forces_one_call(balanced) -> None:  # type: ignore[no-untyped-def]
    balanced.next_query_in_master()

    balanced.get_one("SELECT count(*) FROM accounts")
    assert balanced.destination is DestinationClass.MASTER

    balanced.get_one("SELECT count(*) FROM accounts")
    assert balanced.destination is DestinationClass.SLAVE


def test_sticky_flag_is_cleared_even_when_the_call_fails(balanced, driver) -> None:  # type: ignore[no-untyped-def]
    driver.failing = ["broken_table"]
    balanced.next_query_in_master()

    assert balanced.get_all("SELECT * FROM broken_table") is FAILURE

    balanced.get_all("SELECT * FROM accounts")
    assert balanced.destination is DestinationClass.SLAVE


def test_insert_id_and_affected_rows_use_the_master(balanced) -> None:  # type: ignore[no-untyped-def]
    balanced.get_all("SELECT 1")

    assert balanced.insert_id() == 7
    assert balanced.destination is DestinationClass.MASTER
    balanced.get_all("SELECT 1")
    assert balanced.affected_rows() == 3
    assert balanced.destination is DestinationClass.MASTER


def test_single_server_serves_everything(single, driver) -> None:  # type: ignore[no-untyped-def]
    single.get_all("SELECT 1")
    single.execute("DELETE FROM accounts")
    single.insert_id()

    assert single.destination is DestinationClass.SINGLE_SERVER
    assert driver.hosts() == ["db-single"]


def test_tag_is_appended_as_a_comment(single, driver) -> None:  # type: ignore[no-untyped-def]
    single.get_all("SELECT * FROM accounts", tag="List accounts?")

    _, query, params = _last_call(driver)
    assert query == "SELECT * FROM accounts\n/* List accounts */"
    assert params is None


def test_tag_entry_is_popped_from_mapping_params(single, driver) -> None:  # type: ignore[no-untyped-def]
    params = {0: 5, "tag": "Account by id"}

    single.get_row("SELECT * FROM accounts WHERE id = ?", params)

    _, query, forwarded = _last_call(driver)
    assert query.endswith("/* Account by id */")
    assert forwarded == [5]
    assert params == {0: 5, "tag": "Account by id"}


def test_default_tag_names_the_calling_method(single, driver) -> None:  # type: ignore[no-untyped-def]
    single.get_all("SELECT 1")

    _, query, _ = _last_call(driver)
    assert query.endswith("/* Query from DatabaseProxy (get_all) */")


def test_default_tag_uses_subclass_method(driver, single_config) -> None:  # type: ignore[no-untyped-def]
    class AccountModel(DatabaseProxy):
        def active_accounts(self):  # type: ignore[no-untyped-def]
            return self.get_all("SELECT * FROM accounts WHERE active")

    model = AccountModel(single_config, driver=driver)
    model.active_accounts()

    _, query, _ = _last_call(driver)
    assert query.endswith("/* Query from AccountModel (active_accounts) */")


def test_nested_params_are_unwrapped(single, driver) -> None:  # type: ignore[no-untyped-def]
    single.get_all("SELECT * FROM t WHERE a=? AND b=? AND c=?", [[1, 2, 3]])

    _, _, params = _last_call(driver)
    assert params == [1, 2, 3]


def test_excess_params_are_truncated_with_a_warning(single, driver) -> None:  # type: ignore[no-untyped-def]
    with pytest.warns(ParameterCountWarning, match="Bindings: 2"):
        result = single.get_all("SELECT * FROM t WHERE a=? AND b=?", [1, 2, 3, 4])

    _, _, params = _last_call(driver)
    assert params == [1, 2]
    assert result is not FAILURE


def test_excess_params_warning_points_at_the_calling_line(single) -> None:  # type: ignore[no-untyped-def]
    with pytest.warns(ParameterCountWarning) as convenience:
        single.get_one("SELECT ?", [1, 2])
    with pytest.warns(ParameterCountWarning) as direct:
        single.invoke("get_one", "SELECT ?", [1, 2])

    for record in (*convenience, *direct):
        assert Path(record.filename).name == "test_proxy.py"


def test_empty_params_are_omitted(single, driver) -> None:  # type: ignore[no-untyped-def]
    single.execute("DELETE FROM sessions", {"tag": "Purge sessions"})
    _, _, params = _last_call(driver)
    assert params is None

    single.execute("DELETE FROM sessions", [])
    _, _, params = _last_call(driver)
    assert params is None


def test_failure_is_swallowed_in_interactive_contexts(single, driver, single_config) -> None:  # type: ignore[no-untyped-def]
    driver.failing = ["missing_table"]

    result = single.get_all("SELECT * FROM missing_table")

    assert result is FAILURE
    assert not result
    log = single_config.error_log_path.read_text()
    assert 'Error: relation "missing_table" does not exist' in log


def test_failure_propagates_in_non_interactive_contexts(driver, single_config) -> None:  # type: ignore[no-untyped-def]
    driver.failing = ["missing_table"]
    proxy = DatabaseProxy(single_config, driver=driver, error_policy=ErrorPolicy.PROPAGATE_ON_FAILURE)

    with pytest.raises(DriverError, match="missing_table"):
        proxy.get_all("SELECT * FROM missing_table")

    assert single_config.error_log_path.exists()


def test_connection_errors_always_propagate(driver, single_config) -> None:  # type: ignore[no-untyped-def]
    driver.down_hosts = {"db-single"}
    proxy = DatabaseProxy(single_config, driver=driver)

    with pytest.raises(DatabaseConnectionError):
        proxy.get_all("SELECT 1")


def test_get_row_and_get_one_return_caller_shape(single) -> None:  # type: ignore[no-untyped-def]
    assert single.get_row("SELECT * FROM accounts LIMIT 1") == {"id": 1, "email": "alice@example.com"}
    assert single.get_one("SELECT 42") == 42
    assert single.get_col("SELECT id FROM accounts") == [1, 2]


def test_escape_sql_string(single) -> None:  # type: ignore[no-untyped-def]
    assert single.escape_sql_string("O'Brien") == "'O''Brien'"


def test_close_connection_reconnects_transparently(single, driver) -> None:  # type: ignore[no-untyped-def]
    before = single.get_all("SELECT * FROM accounts")

    single.close_connection()
    after = single.get_all("SELECT * FROM accounts")

    assert before == after
    assert len(driver.connections) == 2
    assert driver.connections[0].closed is True


def test_close_operation_evicts_the_connection(single, driver) -> None:  # type: ignore[no-untyped-def]
    single.get_all("SELECT 1")

    assert single.invoke(Operation.CLOSE) is True

    assert driver.connections[0].closed is True
    assert not single.pool.is_connected(DestinationClass.SINGLE_SERVER)


def test_accessors_open_the_connection_lazily(balanced, driver) -> None:  # type: ignore[no-untyped-def]
    assert driver.connections == []

    assert balanced.host() == "db-master"
    assert balanced.database() == "app"
    assert balanced.user() == "writer"
    balanced.set_fetch_mode("num")
    assert balanced.fetch_mode() is FetchMode.NUM
    assert len(driver.connections) == 1


def test_accessors_honor_the_sticky_flag_without_consuming_it(balanced) -> None:  # type: ignore[no-untyped-def]
    balanced.get_all("SELECT 1")
    assert balanced.host() == "db-replica-1"

    balanced.next_query_in_master()
    assert balanced.host() == "db-master"
    balanced.get_all("SELECT 1")

    assert balanced.destination is DestinationClass.MASTER


def test_transaction_operations_are_forwarded(balanced, driver) -> None:  # type: ignore[no-untyped-def]
    assert balanced.start_trans() is True
    balanced.fail_trans()
    assert balanced.has_failed_trans() is True
    assert balanced.complete_trans() is False

    master = driver.connections[0]
    assert master.host == "db-master"
    assert ("complete_trans", True) in master.calls


def test_invoke_accepts_operation_names(single) -> None:  # type: ignore[no-untyped-def]
    assert single.invoke("get_one", "SELECT 42") == 42

    with pytest.raises(ValueError):
        single.invoke("drop_everything")


def test_query_operations_require_text(single) -> None:  # type: ignore[no-untyped-def]
    with pytest.raises(TypeError):
        single.invoke(Operation.GET_ALL)


def test_context_manager_closes_connections(driver, single_config) -> None:  # type: ignore[no-untyped-def]
    with DatabaseProxy(single_config, driver=driver) as proxy:
        proxy.get_all("SELECT 1")

    assert driver.connections[0].closed is True


def test_get_instance_is_a_process_wide_singleton(monkeypatch, single_config, driver) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr(proxy_module, "load_config", lambda: single_config)
    monkeypatch.setattr(proxy_module, "AsyncpgDriver", lambda **_: driver)
    reset_instance()

    try:
        first = get_instance()
        assert get_instance() is first
        assert first.config is single_config
        first.get_all("SELECT 1")
    finally:
        reset_instance()

    assert driver.connections[0].closed is True
    assert get_instance() is not first
    reset_instance()
