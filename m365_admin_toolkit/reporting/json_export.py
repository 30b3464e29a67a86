"""
JSON exporter — Writes a command's full result with run metadata.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .. import __version__


def export_json(
    payload: Any,
    output_dir: Path,
    report_name: str,
    run_id: str,
    extra_metadata: dict | None = None,
) -> Path:
    """
    Write a result payload to `<report_name>_<run_id>.json`.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    document = {
        "metadata": {
            "tool": "M365 Admin Toolkit",
            "version": __version__,
            "report": report_name,
            "run_id": run_id,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
            **(extra_metadata or {}),
        },
        "result": payload,
    }

    filepath = output_dir / f"{report_name}_{run_id}.json"
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(document, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
