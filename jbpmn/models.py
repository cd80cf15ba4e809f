"""Workflow definitions and running-instance state."""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


def _require_mapping(data: Any, what: str) -> dict:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{what} must be a JSON object, got {type(data).__name__}")
    return data


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field '{key}' must be a string, got {type(value).__name__}")
    return value


def _flag(data: dict, key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"field '{key}' must be a boolean, got {type(value).__name__}")
    return value


def _items(data: dict, key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"field '{key}' must be an array, got {type(value).__name__}")
    return value


@dataclass
class MetaData:
    """Additional information about a workflow."""

    description: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "MetaData":
        data = _require_mapping(data, "meta")
        return cls(description=_text(data, "description"))

    def to_dict(self) -> dict:
        return {"description": self.description} if self.description else {}


@dataclass
class FormField:
    """A single field of a form node."""

    name: str = ""
    type: str = ""
    id: str = ""
    label: str = ""
    required: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "FormField":
        data = _require_mapping(data, "form field")
        return cls(
            name=_text(data, "name"),
            type=_text(data, "type"),
            id=_text(data, "id"),
            label=_text(data, "label"),
            required=_flag(data, "required"),
        )


@dataclass
class ScriptConfig:
    """Script node configuration; ``code`` is base64-encoded JavaScript."""

    code: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "ScriptConfig":
        data = _require_mapping(data, "script")
        return cls(code=_text(data, "code"))


@dataclass
class SignalConfig:
    """Signals a node catches, emits or throws."""

    emit: str = ""
    catch: str = ""
    throw: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "SignalConfig":
        data = _require_mapping(data, "signal")
        return cls(
            emit=_text(data, "emit"),
            catch=_text(data, "catch"),
            throw=_text(data, "throw"),
        )


def _optional(data: dict, key: str, kind):
    value = data.get(key)
    return None if value is None else kind.from_dict(value)


@dataclass
class GatewayCondition:
    """One branch of a gateway node."""

    next: str = ""
    when: str = ""
    else_: bool = False
    signal: Optional[SignalConfig] = None

    @classmethod
    def from_dict(cls, data: Any) -> "GatewayCondition":
        data = _require_mapping(data, "condition")
        return cls(
            next=_text(data, "next"),
            when=_text(data, "when"),
            else_=_flag(data, "else"),
            signal=_optional(data, "signal", SignalConfig),
        )


@dataclass
class GatewayConfig:
    """A list of gateway conditions."""

    conditions: list[GatewayCondition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "GatewayConfig":
        data = _require_mapping(data, "gateway")
        return cls(
            conditions=[GatewayCondition.from_dict(c) for c in _items(data, "conditions")]
        )


@dataclass
class EndConfig:
    """End node configuration."""

    signal: Optional[SignalConfig] = None
    html: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "EndConfig":
        data = _require_mapping(data, "end")
        return cls(signal=_optional(data, "signal", SignalConfig), html=_text(data, "html"))


@dataclass
class TimeoutConfig:
    """Timeout behaviour of a node: after ``duration`` go to ``next``."""

    duration: str = ""
    next: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "TimeoutConfig":
        data = _require_mapping(data, "timeout")
        return cls(duration=_text(data, "duration"), next=_text(data, "next"))


@dataclass
class WorkflowNode:
    """A single node of a workflow definition."""

    id: str = ""
    type: str = ""
    name: str = ""
    next: str = ""
    fields: Optional[list[FormField]] = None
    script: Optional[ScriptConfig] = None
    conditions: list[GatewayCondition] = field(default_factory=list)
    end: Optional[EndConfig] = None
    timeout: Optional[TimeoutConfig] = None
    signal: Optional[SignalConfig] = None

    @classmethod
    def from_dict(cls, data: Any) -> "WorkflowNode":
        data = _require_mapping(data, "node")
        raw_fields = data.get("fields")
        return cls(
            id=_text(data, "id"),
            type=_text(data, "type"),
            name=_text(data, "name"),
            next=_text(data, "next"),
            fields=None
            if raw_fields is None
            else [FormField.from_dict(f) for f in _items(data, "fields")],
            script=_optional(data, "script", ScriptConfig),
            conditions=[GatewayCondition.from_dict(c) for c in _items(data, "conditions")],
            end=_optional(data, "end", EndConfig),
            timeout=_optional(data, "timeout", TimeoutConfig),
            signal=_optional(data, "signal", SignalConfig),
        )


@dataclass
class Workflow:
    """A workflow definition."""

    id: str = ""
    name: str = ""
    meta: MetaData = field(default_factory=MetaData)
    nodes: list[WorkflowNode] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "Workflow":
        data = _require_mapping(data, "workflow")
        return cls(
            id=_text(data, "id"),
            name=_text(data, "name"),
            meta=MetaData.from_dict(data.get("meta")),
            nodes=[WorkflowNode.from_dict(n) for n in _items(data, "nodes")],
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> "Workflow":
        """Parse a workflow definition; raises ValueError on malformed input."""
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("workflow definition must be a JSON object")
        return cls.from_dict(data)

    def get_node_by_id(self, node_id: str) -> Optional[WorkflowNode]:
        """Return a copy of the first node with this id, or None."""
        for node in self.nodes:
            if node.id == node_id:
                return dataclasses.replace(node)
        return None


@dataclass
class WorkflowInstance:
    """A running instance of a workflow."""

    id: str
    workflow_id: str
    current_node: str = ""
    current_node_instance_db_id: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    waiting_signal: str = ""
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    workflow_def: Optional[Workflow] = None
    current_node_def: Optional[WorkflowNode] = None