from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import threading
import time
import zipfile
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# -------------------------
# Path utilities
# -------------------------
def normalize_abs_posix(path: str | Path) -> str:
    """Absolute POSIX-style path string, identical across platforms."""
    return Path(path).resolve().as_posix()


# -------------------------
# Hashing utilities
# -------------------------
def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """Compact, key-sorted JSON used for hashing run identities."""
    return json.dumps(
        payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True
    )


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """
    Return (short_hash8, full_hash_hex) of the canonical JSON encoding of payload.
    """
    digest = hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()
    return digest[:8], digest


# -------------------------
# Manifest helpers
# -------------------------
def _sanitize_for_json(obj: Any) -> Any:
    """
    Recursively convert parameter objects into JSON primitives.

    - Path -> absolute POSIX string
    - Enum / IntFlag -> member name (flag combinations fall back to their value)
    - dataclass -> dict
    - numpy scalars and arrays, pandas Timestamps -> Python values / ISO strings
    - dict keys -> str; list/tuple/set/frozenset -> list (sets sorted)
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, Path):
        return normalize_abs_posix(obj)
    if isinstance(obj, (pd.Timestamp, _dt.datetime, _dt.date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.name if isinstance(obj.name, str) else _sanitize_for_json(obj.value)
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return [_sanitize_for_json(x) for x in obj.tolist()]
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _sanitize_for_json(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, Mapping):
        return {str(k): _sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (set, frozenset)):
        return sorted(_sanitize_for_json(x) for x in obj)
    if isinstance(obj, (list, tuple)):
        return [_sanitize_for_json(x) for x in obj]
    return str(obj)


def build_effective_parameters(**sections: Any) -> dict[str, Any]:
    """
    JSON-serializable mapping of every parameter object that influences a run,
    keyed by section name, e.g. build_effective_parameters(load=..., analysis=...).
    New dataclass fields are picked up without changes here.
    """
    return {name: _sanitize_for_json(value) for name, value in sections.items()}


def write_manifest(path: str | Path, manifest: Dict[str, Any]) -> None:
    """Write manifest JSON (UTF-8, indent=2)."""
    Path(path).write_text(
        json.dumps(manifest, ensure_ascii=False, indent=2), encoding="utf-8"
    )


def utc_timestamp_seconds() -> str:
    """ISO-8601 UTC timestamp with seconds precision and Z suffix."""
    now = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)
    return now.isoformat(timespec="seconds") + "Z"


# -------------------------
# Run directory and artifact helpers (shared by CLI and Gradio UI)
# -------------------------
def ensure_run_dir(base: Path | str = ".", prefix: str = "output") -> Path:
    """
    Create and return `base`/`prefix`/<YYYYmmddTHHMMSS> for one run.
    """
    run_ts = time.strftime("%Y%m%dT%H%M%S", time.localtime())
    run_dir = Path(base) / prefix / run_ts
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Ensured run_dir=%s", str(run_dir))
    return run_dir


def write_tables(
    tables: Mapping[str, pd.DataFrame], run_dir: Path, short_hash: str
) -> list[Path]:
    """
    Write each non-empty table to run_dir/<name>-<short_hash>.csv and return the paths.
    """
    paths: list[Path] = []
    for name, table in tables.items():
        if table is None or table.empty:
            logger.debug("Skipping empty table %s", name)
            continue
        target = Path(run_dir) / f"{name}-{short_hash}.csv"
        table.to_csv(target, index=False)
        paths.append(target)
    return paths


def write_text_report(report_text: str, run_dir: Path, short_hash: str) -> Path:
    """
    Write the report to run_dir/report-<short_hash>.txt.

    Best-effort: an IO failure is logged and the intended path is still returned.
    """
    target = Path(run_dir) / f"report-{short_hash}.txt"
    try:
        target.write_text(report_text, encoding="utf-8")
        logger.debug("Wrote textual report to %s", str(target))
    except OSError as e:
        logger.warning("Failed to write textual report to %s: %s", str(target), e)
    return target


def create_zip_async(zip_path: str, artifact_paths: Iterable[Path]) -> threading.Thread:
    """
    Zip artifact_paths into zip_path from a started background daemon thread.
    Missing artifacts are skipped; failures are logged, never raised.
    """

    def _worker(zip_path_local: str, paths: list[Path]) -> None:
        try:
            with zipfile.ZipFile(
                zip_path_local, "w", compression=zipfile.ZIP_DEFLATED
            ) as zf:
                for p in paths:
                    pth = Path(p)
                    if pth.exists():
                        zf.write(str(pth), arcname=pth.name)
                    else:
                        logger.debug("Skipping missing artifact for zip: %s", str(pth))
            logger.debug("Async zip created at %s", zip_path_local)
        except (OSError, zipfile.BadZipFile) as e:
            logger.warning("Async zip failed for %s: %s", zip_path_local, e)

    thread = threading.Thread(
        target=_worker, args=(zip_path, list(artifact_paths)), daemon=True
    )
    thread.start()
    return thread
