from __future__ import annotations

SCHEMA_VERSION = "v1"
