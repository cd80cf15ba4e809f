import base64
import json
import time

import pytest

from jbpmn.engine import Engine, WorkflowError
from jbpmn.store import NotFoundError, Store


def _write(directory, workflow):
    text = json.dumps(workflow)
    (directory / f"{workflow['id']}.json").write_text(text)
    return text


def _wait_for(engine, instance_id, predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    instance = engine.get_instance_and_definition(instance_id)
    while not predicate(instance):
        if time.monotonic() > deadline:
            raise AssertionError(f"instance stuck at {instance.current_node}")
        time.sleep(0.02)
        instance = engine.get_instance_and_definition(instance_id)
    return instance


@pytest.fixture
def env(tmp_path):
    store = Store(str(tmp_path / "db.sqlite"))
    wf_dir = tmp_path / "workflows"
    wf_dir.mkdir()
    yield store, Engine(store, str(wf_dir)), wf_dir
    time.sleep(0.05)
    store.close()


FORM_FIELDS = [{"name": "name", "type": "text", "required": True}]


def _form_workflow(workflow_id, end=None, start_signal=None, timeout=None):
    start = {"id": "start_node", "type": "start", "next": "form_node"}
    if start_signal:
        start["signal"] = {"catch": start_signal}
    form = {"id": "form_node", "type": "form", "next": "end_node", "fields": FORM_FIELDS}
    if timeout:
        form["timeout"] = timeout
    end_node = {"id": "end_node", "type": "end"}
    if end:
        end_node["end"] = end
    return {"id": workflow_id, "name": workflow_id, "nodes": [start, form, end_node]}


def test_load_workflows_from_dir_skips_bad_files(env):
    _, engine, wf_dir = env
    _write(wf_dir, {"id": "a", "name": "Alpha", "nodes": []})
    (wf_dir / "notes.txt").write_text("ignored")
    (wf_dir / "broken.json").write_text("{not json")
    engine.load_workflows_from_dir(str(wf_dir))
    assert engine.get_workflow_definition("a").name == "Alpha"
    with pytest.raises(WorkflowError):
        engine.get_workflow_definition("broken")


def test_load_missing_directory_raises(env, tmp_path):
    _, engine, _ = env
    with pytest.raises(WorkflowError):
        engine.load_workflows_from_dir(str(tmp_path / "absent"))


def test_dynamic_load_saves_definition(env):
    store, engine, wf_dir = env
    text = _write(wf_dir, {"id": "a", "name": "Alpha", "meta": {"description": "d"}, "nodes": []})
    workflow = engine.get_workflow_definition("a")
    assert workflow.meta.description == "d"
    record = store.get_workflow("a")
    assert record.raw_json == text
    assert json.loads(record.meta) == {"description": "d"}


def test_missing_definition_raises(env):
    _, engine, _ = env
    with pytest.raises(WorkflowError):
        engine.get_workflow_definition("nope")


def test_no_directory_set_raises(env):
    store, _, _ = env
    with pytest.raises(WorkflowError, match="directory not set"):
        Engine(store).get_workflow_definition("a")


def test_create_without_start_node_raises(env):
    _, engine, wf_dir = env
    _write(wf_dir, {"id": "a", "name": "a", "nodes": [{"id": "x", "type": "end"}]})
    with pytest.raises(WorkflowError, match="start_node"):
        engine.create_new_instance("a")


def test_unknown_instance_raises_with_not_found_cause(env):
    _, engine, _ = env
    with pytest.raises(WorkflowError) as info:
        engine.get_instance_and_definition("missing")
    assert isinstance(info.value.__cause__, NotFoundError)


def test_start_runs_to_form_then_form_advances(env):
    _, engine, wf_dir = env
    _write(wf_dir, _form_workflow("flow"))
    instance = engine.create_new_instance("flow")
    assert instance.current_node == "start_node"
    assert instance.context["instanceID"] == instance.id
    assert instance.waiting_signal == ""

    at_form = _wait_for(engine, instance.id, lambda i: i.current_node == "form_node")
    assert at_form.current_node_def.type == "form"

    engine.advance_instance_after_form(instance.id, "end_node", {"name": "Ann"})
    done = _wait_for(engine, instance.id, lambda i: i.current_node == "end_node")
    assert done.context["name"] == "Ann"
    assert done.context["instanceID"] == instance.id


def test_signal_resumes_waiting_instance(env):
    _, engine, wf_dir = env
    _write(wf_dir, _form_workflow("flow", start_signal="go"))
    instance = engine.create_new_instance("flow")
    assert instance.waiting_signal == "go"
    time.sleep(0.1)
    still = engine.get_instance_and_definition(instance.id)
    assert still.current_node == "start_node"
    assert still.waiting_signal == "go"

    engine.emit_signal("go")
    resumed = _wait_for(engine, instance.id, lambda i: i.current_node == "form_node")
    assert resumed.waiting_signal == ""


def test_execute_next_node_does_nothing_while_waiting(env):
    _, engine, wf_dir = env
    _write(wf_dir, _form_workflow("flow", start_signal="go"))
    instance = engine.create_new_instance("flow")
    engine.execute_next_node(instance.id)
    after = engine.get_instance_and_definition(instance.id)
    assert after.current_node_instance_db_id == instance.current_node_instance_db_id


def test_script_and_gateway_route(env):
    _, engine, wf_dir = env
    code = base64.b64encode(b"process_data.age = 20;").decode()
    _write(wf_dir, {
        "id": "route",
        "name": "route",
        "nodes": [
            {"id": "start_node", "type": "start", "next": "script"},
            {"id": "script", "type": "script", "next": "gate", "script": {"code": code}},
            {"id": "gate", "type": "gateway", "conditions": [
                {"when": "age >= 18", "next": "adult"},
                {"else": True, "next": "minor"},
            ]},
            {"id": "adult", "type": "end"},
            {"id": "minor", "type": "end"},
        ],
    })
    instance = engine.create_new_instance("route")
    done = _wait_for(engine, instance.id, lambda i: i.current_node in ("adult", "minor"))
    assert done.current_node == "adult"
    assert done.context["age"] == 20


def test_end_node_signal_resumes_other_workflow(env):
    _, engine, wf_dir = env
    _write(wf_dir, _form_workflow("emitter", end={"signal": {"emit": "done"}}))
    _write(wf_dir, _form_workflow("listener", start_signal="done"))

    listener = engine.create_new_instance("listener")
    emitter = engine.create_new_instance("emitter")
    _wait_for(engine, emitter.id, lambda i: i.current_node == "form_node")
    engine.advance_instance_after_form(emitter.id, "end_node", {"name": "Ann"})

    resumed = _wait_for(engine, listener.id, lambda i: i.current_node == "form_node")
    assert resumed.waiting_signal == ""


def test_timeout_moves_instance_on(env):
    _, engine, wf_dir = env
    _write(wf_dir, _form_workflow("slow", timeout={"duration": "50ms", "next": "end_node"}))
    instance = engine.create_new_instance("slow")
    done = _wait_for(engine, instance.id, lambda i: i.current_node == "end_node")
    assert done.current_node_def.type == "end"


def test_unsupported_node_type_raises(env):
    _, engine, wf_dir = env
    _write(wf_dir, {"id": "odd", "name": "odd",
                    "nodes": [{"id": "start_node", "type": "weird"}]})
    instance = engine.create_new_instance("odd")
    with pytest.raises(WorkflowError, match="unsupported node type"):
        engine.execute_next_node(instance.id)


def test_start_without_next_raises(env):
    _, engine, wf_dir = env
    _write(wf_dir, {"id": "stub", "name": "stub",
                    "nodes": [{"id": "start_node", "type": "start"}]})
    instance = engine.create_new_instance("stub")
    with pytest.raises(WorkflowError, match="no 'next'"):
        engine.execute_next_node(instance.id)


def test_gateway_without_match_raises(env):
    _, engine, wf_dir = env
    _write(wf_dir, {"id": "gw", "name": "gw", "nodes": [
        {"id": "start_node", "type": "gateway",
         "conditions": [{"when": "missing == 1", "next": "x"}]},
        {"id": "x", "type": "end"},
    ]})
    instance = engine.create_new_instance("gw")
    with pytest.raises(WorkflowError, match="gateway"):
        engine.execute_next_node(instance.id)