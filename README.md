# jbpmn

A small workflow engine. Workflows are described in JSON files, the state of
each running instance is kept in SQLite, and everything is driven over HTTP:
start an instance, fill in its forms in the browser, send it signals and look
at its status.

## Installing

```
pip install .
```

To run the tests as well:

```
pip install ".[test]"
pytest
```

## Running the server

```
jbpmn
```

By default the server listens on `0.0.0.0:8080`, keeps its database in
`./jbpmn.db` and reads workflow definitions from `./workflows/`, both
relative to the directory it is started in. The options change that:

```
jbpmn --db state.db --workflows ./defs/ --host 127.0.0.1 --port 9000
```

It stops cleanly on Ctrl-C or SIGTERM.

## Endpoints

The `jbpmn` command serves the application built by
`jbpmn.server.create_app(engine)`:

| Method     | Path                    | What it does                                              |
|------------|-------------------------|-----------------------------------------------------------|
| GET, POST  | `/start/{workflow_id}`  | Create a new instance and start running it                |
| GET        | `/signal/{signal_name}` | Resume every instance waiting for that signal             |
| GET        | `/status/{instance_id}` | JSON status of the instance, or its end page when it ends |
| GET        | `/form/{instance_id}`   | HTML form for an instance waiting at a form node          |
| POST       | `/form/{instance_id}`   | Submit the form; redirects (302) to the status page       |

Answers from `/start`, `/signal` and `/status` are JSON objects with a
`message` and, as they apply, `instance_id`, `workflow_id`, `current_node`,
`status_url`, `form_url`, `context`, `waiting_signal`, `expires_at` and
`error`. An unknown instance gives 404. A form submission that fails
validation is answered with status 400 and the form again, with a message
beside each faulty field.

`jbpmn.api.create_app(engine)` builds an alternative application:

| Method | Path                    | What it does                                                  |
|--------|-------------------------|---------------------------------------------------------------|
| GET    | `/`                     | A landing page listing the routes                             |
| GET    | `/start/{workflow_id}`  | Create and start an instance                                  |
| POST   | `/signal/{signal_name}` | Resume instances waiting for the signal                       |
| GET    | `/form/{instance_id}`   | The form, wrapped in a full HTML page                         |
| POST   | `/form/{instance_id}`   | Submit; redirects (303) to the next form or the status page, or shows the end page |
| GET    | `/status/{instance_id}` | JSON with node type, `created_at`, `updated_at` and `end_html` as well |

## Workflow files

Each `*.json` file in the workflow directory holds one workflow. A workflow
that is asked for but not yet loaded is read from `{workflow_id}.json` in the
workflow directory and recorded in the database.

```json
{
  "id": "onboarding",
  "name": "Onboarding",
  "meta": {"description": "Collect details and route by plan"},
  "nodes": [
    {"id": "start_node", "type": "start", "name": "Start", "next": "details"},
    {"id": "details", "type": "form", "name": "Details", "next": "check_plan",
     "fields": [
       {"name": "name", "type": "text", "required": true},
       {"name": "email", "type": "email", "label": "E-mail"},
       {"name": "plan", "type": "text", "required": true}
     ]},
    {"id": "check_plan", "type": "gateway", "name": "Check plan",
     "conditions": [
       {"when": "plan == premium", "next": "premium"},
       {"else": true, "next": "basic", "signal": {"throw": "basic_seen"}}
     ]},
    {"id": "premium", "type": "end", "name": "Premium",
     "end": {"html": "<h1>Welcome, {{.name}}</h1>"}},
    {"id": "basic", "type": "end", "name": "Basic",
     "end": {"signal": {"emit": "basic_done"}}}
  ]
}
```

Every workflow needs a node with the id `start_node`. Node types:

- `start`: moves straight on to `next`. With `"signal": {"catch": "name"}`
  the new instance waits for that signal before it runs.
- `form`: waits for its `fields` to be submitted. Field types are `text`,
  `number`, `email` and `textarea` (anything else is shown as a text input).
  `required` fields must not be blank, numbers must begin with a number,
  e-mail addresses must contain `@` and `.`. Submitted values are merged
  into the instance context. Through `jbpmn.server` they are stored as the
  submitted strings; through `jbpmn.api` number fields are stored as numbers.
- `script`: runs `script.code`, a base64-encoded JavaScript snippet that
  reads and changes `process_data`, the instance context. The interpreter in
  `jbpmn.scripts` covers declarations, assignments, `if`/`else`, `while`,
  the usual operators, object and array literals, `console`, `Math`,
  `String`, `Number`, `parseInt`, `parseFloat`, `isNaN` and common string and
  array methods.
- `gateway`: takes the first condition whose `when` holds, or an `else`
  condition, and may throw a signal on that path. A `when` is a comparison
  `path op value` with `op` one of `>=`, `<=`, `==`, `!=`, `>`, `<`; the path
  may use dots to reach into nested objects. A number in the context is
  compared as a number, a string as a string (lexicographically).
- `end`: finishes the instance, optionally emitting a signal. Its `html` is
  shown on the status page, with `{{.key}}` and `{{.a.b}}` filled in,
  HTML-escaped, from the context.

Any node may have `"timeout": {"duration": "30s", "next": "other"}`. The
duration takes units `ns`, `us`, `ms`, `s`, `m` and `h`, combined as in
`1m30s`; if the instance is still on that node when the time is up, it moves
to `next`.

## Using it from Python

```python
from jbpmn.store import Store
from jbpmn.engine import Engine
from jbpmn.server import create_app

with Store("jbpmn.db") as store:
    engine = Engine(store, "workflows")
    engine.load_workflows_from_dir("workflows")

    instance = engine.create_new_instance("onboarding")
    print(instance.id, instance.current_node)

    app = create_app(engine)
    app.run(port=8080)
```

`Engine` also offers `get_instance_and_definition`, `execute_next_node`,
`advance_instance_after_form`, `emit_signal` and
`resume_workflows_by_signal`; failures raise `jbpmn.engine.WorkflowError`.
`jbpmn.forms`, `jbpmn.gateway` and `jbpmn.scripts` can be used on their own.

## What it does not do

- Timeouts run as timers inside the server process; they are lost when the
  process stops and are not re-armed on start.
- Nothing sets an expiry on an instance. `Store.get_expired_instances` can
  list expired ones, but nothing acts on them.
- There is no authentication and no user or task management: anyone who
  knows an instance id can see and submit its forms.