"""Workflow execution: instances, node transitions, timeouts and signals."""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from jbpmn.gateway import GatewayError, resolve_gateway_conditions
from jbpmn.models import TimeoutConfig, Workflow, WorkflowInstance
from jbpmn.scripts import ScriptError, execute_script
from jbpmn.store import NotFoundError, Store

log = logging.getLogger(__name__)

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(f"(?:{_DURATION_PART})+")


class WorkflowError(Exception):
    """Raised when a workflow cannot be loaded, started or advanced."""


def _parse_duration(text: str) -> float:
    """Parse a duration such as ``1m30s`` or ``500ms`` into seconds."""
    body = text
    sign = 1.0
    if body and body[0] in "+-":
        sign = -1.0 if body[0] == "-" else 1.0
        body = body[1:]
    if body == "0":
        return 0.0
    if not body or not _DURATION_RE.fullmatch(body):
        raise ValueError(f"invalid duration {text!r}")
    total = sum(
        float(number) * _DURATION_UNITS[unit]
        for number, unit in re.findall(_DURATION_PART, body)
    )
    return sign * total


class Engine:
    """Runs workflow instances persisted in a :class:`Store`."""

    def __init__(self, store: Store, workflow_dir: str = "") -> None:
        self.store = store
        self.workflow_dir = workflow_dir
        self._definitions: dict[str, Workflow] = {}
        self._lock = threading.RLock()

    # -- background work -------------------------------------------------

    def _spawn(self, what: str, fn: Callable[..., Any], *args: Any) -> None:
        def run() -> None:
            try:
                fn(*args)
            except Exception as exc:  # background work only reports failures
                log.error("Error %s: %s", what, exc)

        threading.Thread(target=run, daemon=True).start()

    # -- definitions -----------------------------------------------------

    def set_workflow_directory(self, directory: str) -> None:
        self.workflow_dir = directory
        log.info("Workflow definitions will be primarily loaded from: %s", directory)

    def load_workflows_from_dir(self, directory: str) -> None:
        """Replace the in-memory definitions with the JSON files of a directory."""
        with self._lock:
            self._definitions = {}
            try:
                entries = sorted(os.scandir(directory), key=lambda e: e.name)
            except OSError as exc:
                raise WorkflowError(
                    f"failed to read workflow directory {directory}: {exc}"
                ) from exc
            for entry in entries:
                if entry.is_dir() or os.path.splitext(entry.name)[1] != ".json":
                    continue
                try:
                    with open(entry.path, "rb") as handle:
                        data = handle.read()
                except OSError as exc:
                    log.warning("Failed to read workflow file %s: %s", entry.path, exc)
                    continue
                try:
                    workflow = Workflow.from_json(data)
                except ValueError as exc:
                    log.warning(
                        "Failed to unmarshal workflow JSON from %s: %s", entry.path, exc
                    )
                    continue
                self._definitions[workflow.id] = workflow
                log.info("Loaded workflow definition: %s (ID: %s)", workflow.name, workflow.id)

    def get_workflow_definition(self, workflow_id: str) -> Workflow:
        """Return a definition from memory, or load it from ``<dir>/<id>.json``."""
        with self._lock:
            known = self._definitions.get(workflow_id)
        if known is not None:
            return known
        if not self.workflow_dir:
            raise WorkflowError(
                "workflow directory not set. Call set_workflow_directory first."
            )
        path = os.path.join(self.workflow_dir, f"{workflow_id}.json")
        try:
            with open(path, "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise WorkflowError(
                f"workflow definition '{workflow_id}' not found in memory and failed "
                f"to read from file '{path}': {exc}"
            ) from exc
        try:
            workflow = Workflow.from_json(data)
        except ValueError as exc:
            raise WorkflowError(f"error unmarshalling workflow JSON from {path}: {exc}") from exc

        with self._lock:
            self._definitions[workflow.id] = workflow
        log.info(
            "Dynamically loaded workflow definition: %s (ID: %s) from disk.",
            workflow.name, workflow.id,
        )

        raw = data.decode("utf-8", errors="replace")
        try:
            existing = self.store.get_workflow(workflow.id).raw_json
        except (NotFoundError, sqlite3.Error):
            existing = ""
        if existing != raw:
            log.info("Saving/Updating dynamically loaded workflow '%s' in DB.", workflow.id)
            try:
                self.store.save_workflow(
                    workflow.id, workflow.name, json.dumps(workflow.meta.to_dict()), raw
                )
            except sqlite3.Error as exc:
                log.warning(
                    "Could not save dynamically loaded workflow %s to DB: %s", workflow.id, exc
                )
        return workflow

    # -- instances -------------------------------------------------------

    def create_new_instance(self, workflow_id: str) -> WorkflowInstance:
        """Create an instance at ``start_node`` and start it unless it waits for a signal."""
        try:
            workflow = self.get_workflow_definition(workflow_id)
        except WorkflowError as exc:
            raise WorkflowError(
                f"workflow definition not found or invalid for ID {workflow_id}: {exc}"
            ) from exc

        instance_id = str(uuid.uuid4())
        context: dict[str, Any] = {"instanceID": instance_id}

        start_node = workflow.get_node_by_id("start_node")
        if start_node is None:
            raise WorkflowError(f"workflow {workflow_id} does not have a 'start_node'")

        waiting_signal = ""
        if start_node.signal is not None and start_node.signal.catch:
            waiting_signal = start_node.signal.catch
            log.info(
                "Instance %s created for workflow %s. It is waiting for signal '%s'.",
                instance_id, workflow_id, waiting_signal,
            )
        else:
            log.info(
                "Instance %s created for workflow %s. Starting auto-execution.",
                instance_id, workflow_id,
            )

        try:
            _, node_instance_id = self.store.save_new_instance(
                instance_id, workflow_id, start_node.id, json.dumps(context), waiting_signal, None
            )
        except sqlite3.Error as exc:
            raise WorkflowError(
                f"error saving new workflow instance and initial node to DB: {exc}"
            ) from exc

        now = datetime.now().astimezone()
        instance = WorkflowInstance(
            id=instance_id,
            workflow_id=workflow_id,
            current_node=start_node.id,
            current_node_instance_db_id=node_instance_id,
            context=context,
            waiting_signal=waiting_signal,
            created_at=now,
            updated_at=now,
            workflow_def=workflow,
            current_node_def=start_node,
        )
        if not waiting_signal:
            self._spawn(
                f"during initial workflow execution for instance {instance_id}",
                self.execute_next_node,
                instance_id,
            )
        return instance

    def execute_next_node(self, instance_id: str) -> None:
        """Execute the node the instance currently stands on."""
        try:
            instance = self.get_instance_and_definition(instance_id)
        except WorkflowError as exc:
            raise WorkflowError(
                f"failed to load instance {instance_id} for execution: {exc}"
            ) from exc

        expired = (
            instance.expires_at is not None
            and instance.expires_at < datetime.now().astimezone()
        )
        if instance.waiting_signal or expired:
            log.info(
                "Instance %s is waiting for signal ('%s') or has expired. Not auto-executing.",
                instance_id, instance.waiting_signal,
            )
            return

        node = instance.current_node_def
        log.info("Executing node %s (Type: %s) for instance %s", instance.current_node, node.type, instance.id)

        if node.timeout is not None:
            self._arm_timeout(instance.id, node.timeout, instance.current_node,
                              instance.current_node_instance_db_id)

        try:
            if node.type == "start":
                if not node.next:
                    raise WorkflowError(
                        f"start node {instance.current_node} has no 'next' transition defined"
                    )
                self._advance_instance(instance.id, node.next)
            elif node.type == "form":
                log.info(
                    "Instance %s is at form node %s, waiting for user input.",
                    instance.id, instance.current_node,
                )
            elif node.type == "script":
                self._execute_script_node(instance)
            elif node.type == "gateway":
                self._execute_gateway_node(instance)
            elif node.type == "end":
                self._execute_end_node(instance)
            else:
                raise WorkflowError(
                    f"unsupported node type: {node.type} for node {instance.current_node}"
                )
        except WorkflowError as exc:
            log.error("Error executing node %s for instance %s: %s",
                      instance.current_node, instance.id, exc)
            raise

    def _arm_timeout(
        self, instance_id: str, timeout: TimeoutConfig, node_id: str, node_instance_id: str
    ) -> None:
        try:
            seconds = _parse_duration(timeout.duration)
        except ValueError as exc:
            log.error("Error parsing timeout duration '%s' for instance %s: %s",
                      timeout.duration, instance_id, exc)
            return

        def fire() -> None:
            try:
                current = self.get_instance_and_definition(instance_id)
            except WorkflowError as exc:
                log.error("Error re-fetching instance %s for timeout check: %s", instance_id, exc)
                return
            if current.current_node_instance_db_id != node_instance_id:
                return
            log.info("Instance %s timed out at node %s. Transitioning to %s.",
                     instance_id, node_id, timeout.next)
            try:
                self._advance_instance(instance_id, timeout.next)
            except WorkflowError as exc:
                log.error("Error advancing instance %s after timeout transition: %s",
                          instance_id, exc)

        timer = threading.Timer(max(seconds, 0.0), fire)
        timer.daemon = True
        timer.start()

    def _advance_instance(
        self,
        instance_id: str,
        next_node_id: str,
        waiting_signal: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> None:
        """Move the instance to a node, record the transition and run it if due."""
        try:
            instance = self.get_instance_and_definition(instance_id)
        except WorkflowError as exc:
            raise WorkflowError(f"failed to load instance {instance_id} to advance: {exc}") from exc
        if context is not None:
            instance.context = context

        next_def = instance.workflow_def.get_node_by_id(next_node_id)
        try:
            self.store.update_instance_current_node_and_context(
                instance.id, next_node_id, json.dumps(instance.context),
                waiting_signal or "", instance.expires_at,
            )
        except (sqlite3.Error, TypeError, ValueError) as exc:
            raise WorkflowError(
                f"error saving instance {instance.id} after advancing to {next_node_id}: {exc}"
            ) from exc
        if next_def is None:
            raise WorkflowError(
                f"node '{next_node_id}' not found in workflow {instance.workflow_id}"
            )
        if next_def.type not in ("end", "form") and not waiting_signal:
            self._spawn(
                f"executing next node {next_node_id} for instance {instance_id}",
                self.execute_next_node,
                instance_id,
            )

    def advance_instance_after_form(
        self, instance_id: str, next_node_id: str, form_data: dict[str, Any]
    ) -> None:
        """Merge submitted form data into the context and move to the next node."""
        try:
            instance = self.get_instance_and_definition(instance_id)
        except WorkflowError as exc:
            raise WorkflowError(
                f"failed to load instance {instance_id} to advance after form: {exc}"
            ) from exc
        context = dict(instance.context or {})
        context.update(form_data)
        try:
            self.store.update_instance_current_node_and_context(
                instance.id, next_node_id, json.dumps(context), "", None
            )
        except (sqlite3.Error, TypeError, ValueError) as exc:
            raise WorkflowError(
                f"error saving instance {instance_id} after form submission: {exc}"
            ) from exc
        log.info("Instance %s advanced to node %s after form submission.", instance_id, next_node_id)
        self._spawn(
            f"executing node after form submission for instance {instance_id}",
            self.execute_next_node,
            instance_id,
        )

    def _execute_script_node(self, instance: WorkflowInstance) -> None:
        node = instance.current_node_def
        if node.script is None:
            raise WorkflowError(f"script configuration missing for node {instance.current_node}")
        try:
            new_context = execute_script(node.script.code, instance.context)
        except ScriptError as exc:
            raise WorkflowError(
                f"error executing script for node {instance.current_node}: {exc}"
            ) from exc
        self._advance_instance(instance.id, node.next, context=new_context)

    def _execute_gateway_node(self, instance: WorkflowInstance) -> None:
        try:
            next_node_id, signal = resolve_gateway_conditions(instance)
        except GatewayError as exc:
            raise WorkflowError(
                f"error processing gateway node {instance.current_node} "
                f"for instance {instance.id}: {exc}"
            ) from exc
        if signal:
            log.info("Engine emitting signal '%s' from gateway %s for instance %s",
                     signal, instance.current_node, instance.id)
            self._spawn(f"emitting signal '{signal}' from gateway {instance.current_node}",
                        self.emit_signal, signal)
        self._advance_instance(instance.id, next_node_id)

    def _execute_end_node(self, instance: WorkflowInstance) -> None:
        log.info("Workflow instance %s ended at node %s.", instance.id, instance.current_node)
        end = instance.current_node_def.end
        if end is not None and end.signal is not None and end.signal.emit:
            signal = end.signal.emit
            log.info("End node %s for instance %s emitting signal: %s",
                     instance.current_node, instance.id, signal)
            self._spawn(f"emitting signal '{signal}' from end node {instance.current_node}",
                        self.emit_signal, signal)

    def get_instance_and_definition(self, instance_id: str) -> WorkflowInstance:
        """Load an instance with its workflow and current node definitions."""
        try:
            record = self.store.get_instance(instance_id)
        except (NotFoundError, sqlite3.Error) as exc:
            raise WorkflowError(f"error getting instance {instance_id} from DB: {exc}") from exc
        try:
            node_record = self.store.get_node_instance(record.current_node_instance_id)
        except (NotFoundError, sqlite3.Error) as exc:
            raise WorkflowError(
                f"error getting current node instance details for instance {instance_id} "
                f"(node instance {record.current_node_instance_id}): {exc}"
            ) from exc
        try:
            workflow = self.get_workflow_definition(record.workflow_id)
        except WorkflowError as exc:
            raise WorkflowError(
                f"error getting workflow definition for instance {instance_id} "
                f"(workflow {record.workflow_id}): {exc}"
            ) from exc

        context: dict[str, Any] = {}
        if record.context:
            try:
                parsed = json.loads(record.context)
            except ValueError as exc:
                raise WorkflowError(
                    f"error unmarshalling context for instance {instance_id}: {exc}"
                ) from exc
            if parsed is not None and not isinstance(parsed, dict):
                raise WorkflowError(f"context of instance {instance_id} is not a JSON object")
            context = parsed or {}

        node_def = workflow.get_node_by_id(node_record.node_id)
        if node_def is None:
            raise WorkflowError(
                f"current node definition '{node_record.node_id}' not found in workflow "
                f"definition for instance {instance_id}"
            )
        return WorkflowInstance(
            id=record.id,
            workflow_id=record.workflow_id,
            current_node=node_record.node_id,
            current_node_instance_db_id=record.current_node_instance_id,
            context=context,
            waiting_signal=record.waiting_signal,
            expires_at=record.expires_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            workflow_def=workflow,
            current_node_def=node_def,
        )

    # -- signals ---------------------------------------------------------

    def emit_signal(self, signal_name: str) -> None:
        """Emit a signal, resuming every instance waiting for it."""
        log.info("Signal Emitted: %s. Attempting to resume waiting workflows...", signal_name)
        self.resume_workflows_by_signal(signal_name)

    def resume_workflows_by_signal(self, signal_name: str) -> None:
        """Clear the signal on waiting instances and continue their execution."""
        try:
            instance_ids = self.store.get_instances_waiting_for_signal(signal_name)
        except sqlite3.Error as exc:
            raise WorkflowError(
                f"error getting instances waiting for signal {signal_name}: {exc}"
            ) from exc
        if not instance_ids:
            log.info("No instances found waiting for signal: %s", signal_name)
            return
        for instance_id in instance_ids:
            try:
                instance = self.get_instance_and_definition(instance_id)
            except WorkflowError as exc:
                log.error("Error loading instance %s to resume by signal %s: %s",
                          instance_id, signal_name, exc)
                continue
            try:
                self.store.update_instance_current_node_and_context(
                    instance.id, instance.current_node, json.dumps(instance.context),
                    "", instance.expires_at,
                )
            except (sqlite3.Error, TypeError, ValueError) as exc:
                log.error("Error updating instance %s after clearing signal: %s", instance_id, exc)
                continue
            log.info("Resuming instance %s which was waiting for signal '%s'.",
                     instance_id, signal_name)
            self._spawn(
                f"executing node for instance {instance_id} after signal {signal_name}",
                self.execute_next_node,
                instance_id,
            )