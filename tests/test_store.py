import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from jbpmn.store import NotFoundError, Store, format_time, parse_time


@pytest.fixture
def store(tmp_path):
    with Store(str(tmp_path / "test.db")) as s:
        yield s


def test_format_time_utc_uses_z():
    moment = datetime(2024, 1, 2, 3, 4, 5, 678, tzinfo=timezone.utc)
    assert format_time(moment) == "2024-01-02T03:04:05Z"


def test_time_round_trip_with_offset():
    zone = timezone(timedelta(hours=2))
    moment = datetime(2023, 6, 7, 8, 9, 10, tzinfo=zone)
    assert parse_time(format_time(moment)) == moment


def test_parse_time_rejects_garbage():
    with pytest.raises(ValueError):
        parse_time("yesterday")


def test_save_and_get_workflow_upserts(store):
    store.save_workflow("wf", "Name", "{}", "{\"id\":\"wf\"}")
    store.save_workflow("wf", "Other", "{}", "raw")
    record = store.get_workflow("wf")
    assert (record.id, record.name, record.raw_json) == ("wf", "Other", "raw")


def test_missing_rows_raise_not_found(store):
    with pytest.raises(NotFoundError):
        store.get_workflow("absent")
    with pytest.raises(NotFoundError):
        store.get_instance("absent")
    with pytest.raises(NotFoundError):
        store.get_node_instance("absent")


def test_save_new_instance_links_node(store):
    instance_id, node_id = store.save_new_instance("inst", "wf", "start_node", "{}", "go", None)
    assert (instance_id, node_id) == ("inst", "start_node-inst")
    record = store.get_instance("inst")
    assert record.current_node_instance_id == node_id
    assert record.waiting_signal == "go"
    assert record.expires_at is None
    assert record.created_at is not None and record.created_at == record.updated_at
    node = store.get_node_instance(node_id)
    assert node.node_id == "start_node"
    assert node.workflow_instance_id == "inst"


def test_update_creates_new_node_entry(store):
    store.save_new_instance("inst", "wf", "start_node", "{}", "", None)
    first = store.update_instance_current_node_and_context("inst", "ask", "{\"a\":1}", "", None)
    second = store.update_instance_current_node_and_context("inst", "ask", "{\"a\":2}", "", None)
    assert first != second
    assert first.startswith("ask-inst-")
    record = store.get_instance("inst")
    assert record.current_node_instance_id == second
    assert record.context == "{\"a\":2}"
    assert store.get_node_instance(first).context == "{\"a\":1}"


def test_expires_at_round_trip(store):
    expires = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    store.save_new_instance("inst", "wf", "start_node", "{}", "", None)
    store.update_instance_current_node_and_context("inst", "ask", "{}", "", expires)
    assert store.get_instance("inst").expires_at == expires


def test_waiting_for_signal(store):
    store.save_new_instance("a", "wf", "start_node", "{}", "go", None)
    store.save_new_instance("b", "wf", "start_node", "{}", "stop", None)
    store.save_new_instance("c", "wf", "start_node", "{}", "go", None)
    assert sorted(store.get_instances_waiting_for_signal("go")) == ["a", "c"]
    assert store.get_instances_waiting_for_signal("none") == []


def test_expired_instances(store):
    now = datetime.now().astimezone()
    store.save_new_instance("old", "wf", "start_node", "{}", "", now - timedelta(hours=1))
    store.save_new_instance("new", "wf", "start_node", "{}", "", now + timedelta(hours=1))
    store.save_new_instance("never", "wf", "start_node", "{}", "", None)
    assert store.get_expired_instances() == ["old"]


def test_closed_store_rejects_queries(tmp_path):
    s = Store(str(tmp_path / "x.db"))
    s.close()
    s.close()
    with pytest.raises(sqlite3.ProgrammingError):
        s.get_workflow("wf")


def test_data_persists_across_opens(tmp_path):
    path = str(tmp_path / "p.db")
    with Store(path) as s:
        s.save_workflow("wf", "N", "{}", "raw")
    with Store(path) as s:
        assert s.get_workflow("wf").name == "N"