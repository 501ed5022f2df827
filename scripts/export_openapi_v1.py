"""Export frozen OpenAPI v1 baseline from current FastAPI app."""

from __future__ import annotations

import json
import os
from pathlib import Path

V1_PREFIXES = ("/v1/cycles", "/v1/authorizations", "/v1/doubts", "/v1/history")


def openapi_contract_subset(spec: dict) -> dict:
    """Keep only v1 contract-relevant paths and schema components."""

    paths = {}
    for path, methods in spec.get("paths", {}).items():
        if not path.startswith(V1_PREFIXES) and path != "/healthz":
            continue
        paths[path] = methods
    components = spec.get("components", {}).get("schemas", {})
    return {"paths": paths, "schemas": components}


def main() -> None:
    """Export current OpenAPI subset to v1 baseline file."""

    os.environ.setdefault("RUN_INLINE_WORKER", "false")
    from bpo_engine.api.main import app

    out = openapi_contract_subset(app.openapi())
    out_path = Path("tests/openapi_v1_baseline.json")
    out_path.write_text(
        json.dumps(out, ensure_ascii=False, indent=2, sort_keys=True),
        encoding="utf-8",
    )
    print(f"[openapi] written: {out_path}")


if __name__ == "__main__":
    main()
