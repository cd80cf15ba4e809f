import json
import time

import pytest

from jbpmn.api import create_app
from jbpmn.engine import Engine
from jbpmn.store import Store

WORKFLOWS = {
    "twoforms": {
        "id": "twoforms",
        "name": "Two forms",
        "nodes": [
            {"id": "start_node", "type": "start", "name": "Start", "next": "ask"},
            {
                "id": "ask",
                "type": "form",
                "name": "Ask",
                "next": "confirm",
                "fields": [
                    {"name": "name", "type": "text", "required": True},
                    {"name": "age", "type": "number"},
                ],
            },
            {
                "id": "confirm",
                "type": "form",
                "name": "Confirm",
                "next": "done",
                "fields": [{"name": "ok", "type": "text"}],
            },
            {"id": "done", "type": "end", "name": "Done", "end": {"html": "<p>Thanks</p>"}},
        ],
    },
    "survey": {
        "id": "survey",
        "name": "Survey",
        "nodes": [
            {"id": "start_node", "type": "start", "name": "Start", "next": "ask"},
            {
                "id": "ask",
                "type": "form",
                "name": "Ask",
                "next": "fin",
                "fields": [{"name": "answer", "type": "text", "required": True}],
            },
            {"id": "fin", "type": "end", "name": "Fin"},
        ],
    },
    "waiter": {
        "id": "waiter",
        "name": "Waiter",
        "nodes": [
            {
                "id": "start_node",
                "type": "start",
                "name": "Start",
                "next": "fin",
                "signal": {"catch": "go"},
            },
            {"id": "fin", "type": "end", "name": "Fin"},
        ],
    },
    "broken": {
        "id": "broken",
        "name": "Broken",
        "nodes": [
            {"id": "start_node", "type": "start", "name": "Start", "next": "bare"},
            {"id": "bare", "type": "form", "name": "Bare"},
        ],
    },
}


@pytest.fixture
def engine(tmp_path):
    directory = tmp_path / "workflows"
    directory.mkdir()
    for workflow_id, definition in WORKFLOWS.items():
        (directory / f"{workflow_id}.json").write_text(json.dumps(definition))
    store = Store(str(tmp_path / "engine.db"))
    eng = Engine(store, str(directory))
    eng.load_workflows_from_dir(str(directory))
    yield eng
    time.sleep(0.1)
    store.close()


@pytest.fixture
def client(engine):
    return create_app(engine).test_client()


def wait_for_node(engine, instance_id, node_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        instance = engine.get_instance_and_definition(instance_id)
        if instance.current_node == node_id:
            return instance
        if time.monotonic() > deadline:
            raise AssertionError(f"instance stayed at {instance.current_node}")
        time.sleep(0.02)


def start(client, engine, workflow_id, node_id):
    response = client.get(f"/start/{workflow_id}")
    assert response.status_code == 200
    instance_id = response.get_json()["instance_id"]
    wait_for_node(engine, instance_id, node_id)
    return instance_id


def test_landing_page_lists_routes(client):
    response = client.get("/")
    assert response.status_code == 200
    text = response.get_data(as_text=True)
    assert "<h1>JBPMN Workflow Engine</h1>" in text
    assert "POST /signal/:signal_name" in text


def test_start_returns_instance_description(client):
    response = client.get("/start/twoforms")
    assert response.status_code == 200
    body = response.get_json()
    instance_id = body["instance_id"]
    assert body["message"] == "Workflow instance created."
    assert body["workflow_id"] == "twoforms"
    assert body["current_node"] == "start_node"
    assert body["status_url"] == f"/status/{instance_id}"
    assert body["form_url"] == f"/form/{instance_id}"


def test_start_unknown_workflow_is_server_error(client):
    response = client.get("/start/missing")
    assert response.status_code == 500
    assert response.get_data(as_text=True).startswith("Error starting workflow:")


def test_start_rejects_post(client):
    assert client.post("/start/twoforms").status_code == 405


def test_status_reports_form_node(client, engine):
    instance_id = start(client, engine, "twoforms", "ask")
    response = client.get(f"/status/{instance_id}")
    assert response.status_code == 200
    body = response.get_json()
    assert body["instance_id"] == instance_id
    assert body["current_node"] == "ask"
    assert body["current_node_type"] == "form"
    assert body["context"]["instanceID"] == instance_id
    assert "end_html" not in body
    assert "waiting_signal" not in body


def test_status_unknown_instance_is_not_found(client):
    response = client.get("/status/nope")
    assert response.status_code == 404
    assert "Workflow instance not found or error loading" in response.get_data(as_text=True)


def test_get_form_renders_fields(client, engine):
    instance_id = start(client, engine, "twoforms", "ask")
    response = client.get(f"/form/{instance_id}")
    assert response.status_code == 200
    text = response.get_data(as_text=True)
    assert f"<h1>Form for Instance: {instance_id}</h1>" in text
    assert f'<form action="/form/{instance_id}" method="POST">' in text
    assert 'name="age"' in text


def test_get_form_on_non_form_node_is_bad_request(client, engine):
    response = client.get("/start/waiter")
    instance_id = response.get_json()["instance_id"]
    response = client.get(f"/form/{instance_id}")
    assert response.status_code == 400
    assert "is not currently at a form node. Current node type: start" in response.get_data(
        as_text=True
    )


def test_form_without_fields_is_server_error(client, engine):
    instance_id = start(client, engine, "broken", "bare")
    response = client.get(f"/form/{instance_id}")
    assert response.status_code == 500
    assert "Form configuration missing for current node." in response.get_data(as_text=True)


def test_post_form_with_errors_rerenders(client, engine):
    instance_id = start(client, engine, "twoforms", "ask")
    response = client.post(f"/form/{instance_id}", data={"age": "abc"})
    assert response.status_code == 200
    text = response.get_data(as_text=True)
    assert "Please correct errors" in text
    assert "This field is required." in text
    assert "Must be a valid number." in text
    assert engine.get_instance_and_definition(instance_id).current_node == "ask"


def test_post_form_walks_to_next_form_then_end(client, engine):
    instance_id = start(client, engine, "twoforms", "ask")
    response = client.post(f"/form/{instance_id}", data={"name": "Ada", "age": "30"})
    assert response.status_code == 303
    assert response.headers["Location"].endswith(f"/form/{instance_id}")
    instance = engine.get_instance_and_definition(instance_id)
    assert instance.current_node == "confirm"
    assert instance.context["name"] == "Ada"
    assert instance.context["age"] == 30

    response = client.post(f"/form/{instance_id}", data={"ok": "yes"})
    assert response.status_code == 200
    assert response.get_data(as_text=True) == "<p>Thanks</p>"

    status = client.get(f"/status/{instance_id}").get_json()
    assert status["current_node_type"] == "end"
    assert status["end_html"] == "<p>Thanks</p>"
    assert status["context"]["ok"] == "yes"


def test_post_form_to_plain_end_redirects_to_status(client, engine):
    instance_id = start(client, engine, "survey", "ask")
    response = client.post(f"/form/{instance_id}", data={"answer": "blue"})
    assert response.status_code == 303
    assert response.headers["Location"].endswith(f"/status/{instance_id}")
    status = client.get(f"/status/{instance_id}").get_json()
    assert status["current_node"] == "fin"
    assert status["context"]["answer"] == "blue"


def test_signal_resumes_waiting_instance(client, engine):
    response = client.get("/start/waiter")
    instance_id = response.get_json()["instance_id"]
    status = client.get(f"/status/{instance_id}").get_json()
    assert status["waiting_signal"] == "go"

    response = client.post("/signal/go")
    assert response.status_code == 200
    assert response.get_json() == {
        "message": "Signal 'go' processed. Attempting to resume workflows."
    }
    instance = wait_for_node(engine, instance_id, "fin")
    assert instance.waiting_signal == ""


def test_signal_rejects_get(client):
    assert client.get("/signal/go").status_code == 405