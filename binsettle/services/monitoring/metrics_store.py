from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict

_DEFAULT_PATH = Path("data/metrics.json")


def write_metrics(data: Dict[str, Any], path: Path = _DEFAULT_PATH) -> None:
    """Publish the worker's metrics so a separate API process can serve them."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, default=str), encoding="utf-8")
    tmp.replace(path)  # atomic replace


def read_metrics(path: Path = _DEFAULT_PATH) -> Dict[str, Any]:
    if not path.exists():
        return {"message": "metrics not yet available"}
    return json.loads(path.read_text(encoding="utf-8"))
