"""Routed HTTP API over the workflow engine, with a landing page."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from typing import Any, Optional

from flask import Flask, Response, redirect, request

from jbpmn.engine import Engine, WorkflowError
from jbpmn.forms import generate_html_form, merge_form_input_into_context, validate_form_input
from jbpmn.models import WorkflowInstance
from jbpmn.store import format_time

log = logging.getLogger(__name__)

_ZERO_TIME = "0001-01-01T00:00:00Z"

_LANDING_PAGE = """<h1>JBPMN Workflow Engine</h1>
\t\t\t<p>Available Routes:</p>
\t\t\t<ul>
\t\t\t\t<li><code>GET /start/:workflow_id</code> - Start a new workflow instance</li>
\t\t\t\t<li><code>POST /signal/:signal_name</code> - Resume workflows waiting on a signal</li>
\t\t\t\t<li><code>GET /form/:instance_id</code> - Render a form for a workflow instance</li>
\t\t\t\t<li><code>POST /form/:instance_id</code> - Submit form data for a workflow instance</li>
\t\t\t\t<li><code>GET /status/:instance_id</code> - Get current status and context of a workflow instance</li>
\t\t\t</ul>
\t\t\t<p>Ensure your workflow JSON files are in the <code>./workflows/</code> directory.</p>
\t\t"""


def _json(body: dict[str, Any]) -> Response:
    return Response(json.dumps(body) + "\n", status=200, mimetype="application/json")


def _html(body: str, status: int = 200) -> Response:
    return Response(body, status=status, content_type="text/html; charset=utf-8")


def _error(message: str, status: int) -> Response:
    return Response(message + "\n", status=status, content_type="text/plain; charset=utf-8")


def _time(moment: Optional[datetime]) -> str:
    return format_time(moment) if moment is not None else _ZERO_TIME


def _run_in_background(engine: Engine, instance_id: str) -> None:
    def run() -> None:
        try:
            engine.execute_next_node(instance_id)
        except Exception as exc:  # background execution only reports failures
            log.error(
                "Error executing workflow for instance %s after form submission: %s",
                instance_id, exc,
            )

    threading.Thread(target=run, daemon=True).start()


def create_app(engine: Engine) -> Flask:
    """Build the Flask application with the routed API endpoints."""
    app = Flask(__name__)

    def load_form_instance(instance_id: str) -> tuple[Optional[WorkflowInstance], Optional[Response]]:
        try:
            instance = engine.get_instance_and_definition(instance_id)
        except WorkflowError as exc:
            return None, _error(f"Workflow instance not found or error loading: {exc}", 404)
        node = instance.current_node_def
        if node.type != "form":
            return None, _error(
                f"Instance {instance_id} is not currently at a form node. "
                f"Current node type: {node.type}",
                400,
            )
        if node.fields is None:
            return None, _error("Form configuration missing for current node.", 500)
        return instance, None

    @app.route("/start/<workflow_id>", methods=["GET"])
    def start_workflow(workflow_id: str) -> Response:
        try:
            instance = engine.create_new_instance(workflow_id)
        except WorkflowError as exc:
            return _error(f"Error starting workflow: {exc}", 500)
        body = {
            "message": "Workflow instance created.",
            "instance_id": instance.id,
            "workflow_id": instance.workflow_id,
            "current_node": instance.current_node,
            "status_url": f"/status/{instance.id}",
            "form_url": f"/form/{instance.id}",
        }
        log.info("API: Started workflow instance %s for workflow %s", instance.id, workflow_id)
        return _json(dict(sorted(body.items())))

    @app.route("/signal/<signal_name>", methods=["POST"])
    def signal(signal_name: str) -> Response:
        try:
            engine.resume_workflows_by_signal(signal_name)
        except WorkflowError as exc:
            return _error(f"Error processing signal: {exc}", 500)
        log.info("API: Received signal '%s'.", signal_name)
        return _json({
            "message": f"Signal '{signal_name}' processed. Attempting to resume workflows."
        })

    @app.route("/form/<instance_id>", methods=["GET"])
    def get_form(instance_id: str) -> Response:
        instance, failure = load_form_instance(instance_id)
        if failure is not None:
            return failure
        form_html = generate_html_form(
            instance.current_node_def.fields, instance.context, instance_id, None
        )
        log.info("API: Rendered form for instance %s at node %s", instance_id, instance.current_node)
        return _html(
            "<!DOCTYPE html><html><head><title>Workflow Form</title></head><body>\n"
            f"\t\t<h1>Form for Instance: {instance_id}</h1>\n"
            f"\t\t{form_html}\n"
            "\t</body></html>"
        )

    @app.route("/form/<instance_id>", methods=["POST"])
    def post_form(instance_id: str) -> Response:
        instance, failure = load_form_instance(instance_id)
        if failure is not None:
            return failure
        node = instance.current_node_def
        submitted = {key: values[0] for key, values in request.form.lists() if values}

        errors = validate_form_input(node.fields, submitted)
        if errors:
            form_html = generate_html_form(node.fields, instance.context, instance_id, errors)
            log.info("API: Form submission for instance %s had validation errors.", instance_id)
            return _html(
                "<!DOCTYPE html><html><head><title>Workflow Form - Errors</title></head><body>\n"
                f"\t\t\t<h1>Form for Instance: {instance_id} - Please correct errors</h1>\n"
                f"\t\t\t{form_html}\n"
                "\t\t</body></html>"
            )

        merge_form_input_into_context(instance.context, node.fields, submitted)
        try:
            context_json = json.dumps(instance.context)
        except (TypeError, ValueError) as exc:
            return _error(f"Error marshalling context: {exc}", 500)
        next_node_id = node.next
        if not next_node_id:
            return _error(
                f"Form node {instance.current_node} in instance {instance_id} "
                "does not define a 'next' node.",
                500,
            )
        try:
            engine.store.update_instance_current_node_and_context(
                instance.id, next_node_id, context_json, "", None
            )
        except Exception as exc:
            return _error(f"Error saving instance after form submission: {exc}", 500)

        log.info(
            "API: Form for instance %s submitted successfully. Moving to next node %s.",
            instance_id, next_node_id,
        )
        _run_in_background(engine, instance_id)

        try:
            following = engine.get_instance_and_definition(instance_id)
        except WorkflowError:
            following = None
        next_def = following.current_node_def if following is not None else None
        if next_def is not None and next_def.type == "form":
            return redirect(f"/form/{instance_id}", code=303)
        if (
            next_def is not None
            and next_def.type == "end"
            and next_def.end is not None
            and next_def.end.html
        ):
            return _html(next_def.end.html)
        return redirect(f"/status/{instance_id}", code=303)

    @app.route("/status/<instance_id>", methods=["GET"])
    def get_status(instance_id: str) -> Response:
        try:
            instance = engine.get_instance_and_definition(instance_id)
        except WorkflowError as exc:
            return _error(f"Workflow instance not found or error loading: {exc}", 404)
        node = instance.current_node_def
        body: dict[str, Any] = {
            "instance_id": instance.id,
            "workflow_id": instance.workflow_id,
            "current_node": instance.current_node,
            "current_node_type": node.type,
            "context": instance.context,
        }
        if instance.waiting_signal:
            body["waiting_signal"] = instance.waiting_signal
        if instance.expires_at is not None:
            body["expires_at"] = format_time(instance.expires_at)
        body["created_at"] = _time(instance.created_at)
        body["updated_at"] = _time(instance.updated_at)
        if node.type == "end" and node.end is not None and node.end.html:
            body["end_html"] = node.end.html
        log.info("API: Retrieved status for instance %s.", instance_id)
        return _json(body)

    @app.route("/", methods=["GET"])
    def landing() -> Response:
        return Response(_LANDING_PAGE, status=200, content_type="text/html")

    return app