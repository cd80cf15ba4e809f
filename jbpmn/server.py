"""HTTP front end: start workflows, emit signals, report status and handle forms."""

from __future__ import annotations

import argparse
import json
import logging
import math
import re
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime
from html import escape
from typing import Any, Mapping, Optional, Sequence

from flask import Flask, Response, redirect, request
from werkzeug.serving import make_server

from jbpmn.engine import Engine, WorkflowError
from jbpmn.forms import generate_html_form, merge_form_input_into_context, validate_form_input
from jbpmn.models import FormField
from jbpmn.store import NotFoundError, Store, format_time

log = logging.getLogger(__name__)

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
_ACTION_RE = re.compile(r"\{\{(.*?)\}\}", re.S)
_FIELD_RE = re.compile(r"\.(?:[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)?")
_SHUTDOWN_TIMEOUT = 5.0


def _form_field_dict(form_field: FormField) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if form_field.id:
        data["id"] = form_field.id
    data["name"] = form_field.name
    if form_field.label:
        data["label"] = form_field.label
    data["type"] = form_field.type
    if form_field.required:
        data["required"] = True
    return data


@dataclass
class APIResponse:
    """The JSON body of every API answer; empty fields are left out."""

    message: str = ""
    instance_id: str = ""
    workflow_id: str = ""
    current_node: str = ""
    status_url: str = ""
    form_url: str = ""
    error: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    waiting_signal: str = ""
    expires_at: Optional[datetime] = None
    form_fields: Sequence[FormField] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for key in ("instance_id", "workflow_id", "current_node"):
            if getattr(self, key):
                data[key] = getattr(self, key)
        data["message"] = self.message
        for key in ("status_url", "form_url", "error"):
            if getattr(self, key):
                data[key] = getattr(self, key)
        if self.context:
            data["context"] = self.context
        if self.waiting_signal:
            data["waiting_signal"] = self.waiting_signal
        if self.expires_at is not None:
            data["expires_at"] = format_time(self.expires_at)
        if self.form_fields:
            data["form_fields"] = [_form_field_dict(f) for f in self.form_fields]
        return data


def _display(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return str(value)


def _lookup(context: Any, path: str) -> Any:
    current = context
    for part in (p for p in path.split(".") if p):
        if current is None:
            return None
        if not isinstance(current, Mapping):
            raise ValueError(f"can't evaluate field {part} in type {type(current).__name__}")
        current = current.get(part)
    return current


def render_end_html(template: str, context: Mapping[str, Any]) -> str:
    """Fill ``{{.key}}`` and ``{{.a.b}}`` actions from the context, HTML-escaped."""
    parts: list[str] = []
    pos = 0
    for match in _ACTION_RE.finditer(template):
        parts.append(template[pos:match.start()])
        action = match.group(1).strip()
        if not _FIELD_RE.fullmatch(action):
            raise ValueError(f"unsupported template action: {{{{{match.group(1)}}}}}")
        parts.append(escape(_display(_lookup(context, action))))
        pos = match.end()
    rest = template[pos:]
    if "{{" in rest:
        raise ValueError("unclosed template action")
    parts.append(rest)
    return "".join(parts)


def _json(status: int, body: APIResponse) -> Response:
    return Response(json.dumps(body.to_dict()) + "\n", status=status, mimetype="application/json")


def _html(status: int, body: str) -> Response:
    return Response(body, status=status, content_type="text/html; charset=utf-8")


def _plain_error(status: int, message: str) -> Response:
    return Response(message + "\n", status=status, content_type="text/plain; charset=utf-8")


def _base(path: str) -> str:
    trimmed = path.rstrip("/")
    if not trimmed:
        return "/"
    return trimmed.rsplit("/", 1)[-1]


def _segment(path: str) -> str:
    parts = path.split("/")
    return parts[2] if len(parts) >= 3 else ""


def _is_not_found(exc: BaseException) -> bool:
    cause: Optional[BaseException] = exc
    while cause is not None:
        if isinstance(cause, NotFoundError):
            return True
        cause = cause.__cause__
    return False


def create_app(engine: Engine) -> Flask:
    """Build the Flask application serving the engine."""
    app = Flask(__name__)

    def start_workflow(rest: str = "") -> Response:
        if request.method not in ("GET", "POST"):
            return _json(405, APIResponse(error="Method not allowed. Use GET or POST.",
                                          message="Invalid HTTP method."))
        workflow_id = _segment(request.path)
        if not workflow_id:
            return _json(400, APIResponse(
                error="Workflow ID not provided. Usage: /start/{workflowID}",
                message="Missing workflow ID."))
        log.info("Attempting to create new instance for workflow ID: %s via HTTP request.", workflow_id)
        try:
            instance = engine.create_new_instance(workflow_id)
        except WorkflowError as exc:
            log.error("Error creating workflow instance for %s: %s", workflow_id, exc)
            return _json(500, APIResponse(error=f"Failed to create workflow instance: {exc}",
                                          message="Failed to start workflow."))
        response = APIResponse(
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            current_node=instance.current_node,
            status_url=f"/status/{instance.id}",
        )
        node = instance.current_node_def
        if instance.waiting_signal:
            response.message = (
                f"Workflow instance created. Waiting for signal: '{instance.waiting_signal}'."
            )
        elif node is not None and node.type == "form":
            response.message = "Workflow instance created. Awaiting form submission."
            response.form_url = f"/form/{instance.id}"
        else:
            response.message = "Workflow instance created and started execution."
        return _json(200, response)

    def emit(rest: str = "") -> Response:
        if request.method != "GET":
            return _json(405, APIResponse(error="Method not allowed. Use GET.",
                                          message="Invalid HTTP method."))
        signal_name = _segment(request.path)
        if not signal_name:
            return _json(400, APIResponse(
                error="Signal name not provided. Usage: /signal/{signalName}",
                message="Missing signal name."))
        log.info("Received signal: %s via HTTP request.", signal_name)
        try:
            engine.emit_signal(signal_name)
        except WorkflowError as exc:
            log.error("Error emitting signal %s: %s", signal_name, exc)
            return _json(500, APIResponse(error=f"Failed to emit signal: {exc}",
                                          message="Failed to process signal."))
        return _json(200, APIResponse(
            message=f"Signal '{signal_name}' processed. Attempting to resume workflows."))

    def status(rest: str = "") -> Response:
        if request.method != "GET":
            return _json(405, APIResponse(error="Method not allowed. Use GET.",
                                          message="Invalid HTTP method."))
        instance_id = _base(request.path)
        if instance_id in ("status", ""):
            return _json(400, APIResponse(
                error="Instance ID not provided. Usage: /status/{instanceID}",
                message="Missing instance ID."))
        try:
            instance = engine.get_instance_and_definition(instance_id)
        except WorkflowError as exc:
            if _is_not_found(exc):
                return _json(404, APIResponse(
                    error=f"Workflow instance '{instance_id}' not found.",
                    message="Instance not found."))
            log.error("Error getting workflow instance status %s: %s", instance_id, exc)
            return _json(500, APIResponse(error=f"Failed to get instance status: {exc}",
                                          message="Failed to retrieve status."))
        node = instance.current_node_def
        if node is not None and node.type == "end" and node.end is not None and node.end.html:
            try:
                page = render_end_html(node.end.html, instance.context)
            except ValueError as exc:
                log.error("Error rendering end node HTML for instance %s: %s", instance_id, exc)
                return _plain_error(500, "Failed to render end page due to template error.")
            return _html(200, page)
        response = APIResponse(
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            current_node=instance.current_node,
            context=instance.context,
            waiting_signal=instance.waiting_signal,
            expires_at=instance.expires_at,
            message="Workflow instance status retrieved successfully.",
        )
        if node is not None and node.type == "form":
            response.form_url = f"/form/{instance.id}"
        return _json(200, response)

    def form(rest: str = "") -> Response:
        instance_id = _base(request.path)
        if instance_id in ("form", ""):
            return _json(400, APIResponse(
                error="Instance ID not provided. Usage: /form/{instanceID}",
                message="Missing instance ID."))
        try:
            instance = engine.get_instance_and_definition(instance_id)
        except WorkflowError as exc:
            if _is_not_found(exc):
                return _json(404, APIResponse(
                    error=f"Workflow instance '{instance_id}' not found.",
                    message="Instance not found."))
            log.error("Error getting workflow instance for form %s: %s", instance_id, exc)
            return _json(500, APIResponse(error=f"Failed to retrieve form: {exc}",
                                          message="Internal server error."))
        node = instance.current_node_def
        if node is None or node.type != "form" or not node.fields:
            return _json(400, APIResponse(
                error=(f"Node '{instance.current_node}' for instance '{instance_id}' is not a "
                       "valid form node or is missing form definition."),
                message="Current node is not a form or form definition is incomplete."))

        if request.method == "GET":
            return _html(200, generate_html_form(node.fields, instance.context, instance.id, None))

        if request.method == "POST":
            submitted: dict[str, str] = {}
            for key, values in request.args.lists():
                if values:
                    submitted[key] = values[0]
            for key, values in request.form.lists():
                if values:
                    submitted[key] = values[0]
            errors = validate_form_input(node.fields, submitted)
            if errors:
                log.info("Form validation failed for instance %s: %s", instance_id, errors)
                return _html(400, generate_html_form(node.fields, instance.context,
                                                     instance.id, errors))
            merge_form_input_into_context(instance.context, node.fields, submitted)
            try:
                engine.advance_instance_after_form(instance.id, node.next, dict(submitted))
            except WorkflowError as exc:
                log.error("Error advancing workflow after form for instance %s: %s",
                          instance_id, exc)
                return _plain_error(500, f"Failed to advance workflow after form: {exc}")
            log.info("Form submitted and workflow advanced for instance %s", instance_id)
            return redirect(f"/status/{instance.id}", code=302)

        return _json(405, APIResponse(error="Method not allowed. Use GET or POST.",
                                      message="Invalid HTTP method for form endpoint."))

    for prefix, view in (("start", start_workflow), ("signal", emit),
                         ("status", status), ("form", form)):
        app.add_url_rule(f"/{prefix}/", f"{prefix}_root", view, methods=_ALL_METHODS)
        app.add_url_rule(f"/{prefix}/<path:rest>", prefix, view, methods=_ALL_METHODS)
    return app


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Start the HTTP server and run until SIGINT or SIGTERM."""
    parser = argparse.ArgumentParser(prog="jbpmn", description="Workflow engine HTTP server.")
    parser.add_argument("--db", default="./jbpmn.db", help="SQLite database file")
    parser.add_argument("--workflows", default="./workflows/", help="workflow JSON directory")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    log.info("Starting jBPMN Engine...")
    try:
        store = Store(args.db)
    except Exception as exc:
        log.error("Failed to initialize database: %s", exc)
        return 1
    with store:
        engine = Engine(store)
        engine.set_workflow_directory(args.workflows)
        try:
            engine.load_workflows_from_dir(args.workflows)
        except WorkflowError as exc:
            log.error("Failed to load workflow definitions from %s: %s", args.workflows, exc)
            return 1
        log.info("Workflows loaded from %s.", args.workflows)

        server = make_server(args.host, args.port, create_app(engine), threaded=True)
        stop_requested = threading.Event()

        def request_stop(signum: int, frame: Any) -> None:
            stop_requested.set()

        previous = {
            signum: signal.signal(signum, request_stop)
            for signum in (signal.SIGINT, signal.SIGTERM)
        }
        serving = threading.Thread(target=server.serve_forever, daemon=True)
        log.info("HTTP server starting on %s:%d", args.host, args.port)
        serving.start()
        try:
            while not stop_requested.wait(0.5):
                pass
            log.info("Received shutdown signal. Shutting down gracefully...")
            server.shutdown()
            serving.join(_SHUTDOWN_TIMEOUT)
        finally:
            server.server_close()
            for signum, handler in previous.items():
                signal.signal(signum, handler)
        log.info("HTTP server shut down.")
    log.info("jBPMN Engine stopped.")
    print("Application exited.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())