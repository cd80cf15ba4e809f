"""HTML form generation, validation and merging of submitted values."""

from __future__ import annotations

import math
import re
from typing import Any, Mapping, Optional, Sequence

from jbpmn.models import FormField

_NUMBER_PREFIX = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def _escape(text: str) -> str:
    return (
        text.replace("\0", "\ufffd")
        .replace("&", "&amp;")
        .replace("'", "&#39;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&#34;")
    )


def _display(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    return str(value)


def _title(text: str) -> str:
    return re.sub(r"(^|\s)(\S)", lambda m: m.group(1) + m.group(2).upper(), text)


def _scan_number(text: str) -> Optional[float]:
    match = _NUMBER_PREFIX.match(text.lstrip())
    return float(match.group()) if match else None


def generate_html_form(
    form_fields: Sequence[FormField],
    context: Mapping[str, Any],
    instance_id: str,
    errors: Optional[Mapping[str, str]] = None,
) -> str:
    """Render the fields as an HTML form prefilled from the context."""
    errors = errors or {}
    parts = [f'<form action="/form/{instance_id}" method="POST">', "<table>"]
    for field in form_fields:
        name = field.name
        value = _display(context[name]) if name in context else ""
        required = "required" if field.required else ""
        label = field.label or _title(name)
        parts.append("<tr>")
        parts.append(f'<td><label for="{name}">{_escape(label)}:</label></td>')
        parts.append("<td>")
        if field.type in ("text", "number", "email"):
            parts.append(
                f'<input type="{field.type}" id="{name}" name="{name}" '
                f'value="{_escape(value)}" {required}>'
            )
        elif field.type == "textarea":
            parts.append(f'<textarea id="{name}" name="{name}" {required}>{_escape(value)}</textarea>')
        else:
            parts.append(
                f'<input type="text" id="{name}" name="{name}" value="{_escape(value)}" {required}>'
            )
        message = errors.get(name, "")
        if message:
            parts.append(f'<span style="color: red;">{_escape(message)}</span>')
        parts.append("</td>")
        parts.append("</tr>")
    parts.append("</table>")
    parts.append('<br><button type="submit">Submit</button>')
    parts.append("</form>")
    return "".join(parts)


def validate_form_input(
    form_fields: Sequence[FormField], input_data: Mapping[str, str]
) -> dict[str, str]:
    """Return a mapping of field name to error message; empty when valid."""
    errors: dict[str, str] = {}
    for field in form_fields:
        value = input_data.get(field.name)
        present = value is not None and value.strip() != ""
        if field.required and not present:
            errors[field.name] = "This field is required."
            continue
        if not present:
            continue
        if field.type == "number" and _scan_number(value) is None:
            errors[field.name] = "Must be a valid number."
        elif field.type == "email" and ("@" not in value or "." not in value):
            errors[field.name] = "Must be a valid email address."
    return errors


def merge_form_input_into_context(
    context: dict[str, Any], form_fields: Sequence[FormField], input_data: Mapping[str, str]
) -> None:
    """Copy submitted values into the context, numbers converted to float."""
    for field in form_fields:
        if field.name not in input_data:
            continue
        value = input_data[field.name]
        if field.type == "number":
            number = _scan_number(value)
            context[field.name] = value if number is None else number
        else:
            context[field.name] = value