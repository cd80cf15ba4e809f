"""A JSON-defined workflow engine with forms, gateways, scripts, signals and timeouts, stored in SQLite and served over HTTP."""

__version__ = "0.1.0"