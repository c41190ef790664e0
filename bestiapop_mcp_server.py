"""
BestiaPop-MCP Server

Wraps the BestiaPop SILO climate-file generator as an MCP-compliant service:
  - install_status() / install_bestiapop()
  - generate_weather(latitude, longitude, start_year, end_year, ...)
  - get_status()
  - list_met_files(output_dir)
  - read_weather(met_file, start_date, end_date)

Design goals
- Install on demand (git clone + pip install into BESTIAPOP_HOME, rolled back on failure)
- Reproducibility (every generated output folder gets a SHA-256 manifest)
- Minimal deps: fastmcp, pydantic, pandas, python-dotenv

Quickstart
1) python -m venv .venv; source .venv/bin/activate
2) pip install -e .
3) Set environment variables (see ENV section below) or create .env next to this file.
4) python bestiapop_mcp_server.py  (starts an MCP server over stdio)
"""
from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    from pydantic import ValidationError
except Exception as e:  # pragma: no cover
    print("Pydantic is required: pip install pydantic", file=sys.stderr)
    raise

try:
    from fastmcp import FastMCP  # type: ignore
except Exception as e:  # pragma: no cover
    print("fastmcp is required: pip install fastmcp", file=sys.stderr)
    raise

from dotenv import load_dotenv  # type: ignore

from met_utils import MetFileError, list_met_files as _list_met_files, parse_met_header, read_met_file
from weather_acquisition import (
    BESTIAPOP_URL,
    AcquisitionError,
    AcquisitionRequest,
    BestiapopOrchestrator,
)

# -----------------------------
# ENV & PATHS
# -----------------------------
# Optional env vars (create .env file or set in shell):
#   BESTIAPOP_HOME    : Where bestiapop is cloned (default <app data>/ApsimInitiative/ApsimX/Python/bestiapop)
#   BESTIAPOP_REPO    : Git URL to clone from
#   BESTIAPOP_PYTHON  : Interpreter used to run bestiapop and pip (default: this interpreter)
#   BESTIAPOP_GIT     : git executable
#   BESTIAPOP_TIMEOUT : Seconds before a git/pip/bestiapop child is killed (blank = no limit)
#   LOG_LEVEL         : Logging level for stderr diagnostics (default INFO)

load_dotenv()


def _app_data_dir() -> Path:
    appdata = os.getenv("APPDATA")
    if appdata:
        return Path(appdata)
    return Path(os.getenv("XDG_DATA_HOME", str(Path.home() / ".local" / "share")))


BESTIAPOP_HOME = Path(os.getenv(
    "BESTIAPOP_HOME",
    str(_app_data_dir() / "ApsimInitiative" / "ApsimX" / "Python" / "bestiapop"),
)).expanduser().resolve()
BESTIAPOP_REPO = os.getenv("BESTIAPOP_REPO", BESTIAPOP_URL)
BESTIAPOP_PYTHON = os.getenv("BESTIAPOP_PYTHON", sys.executable)
BESTIAPOP_GIT = os.getenv("BESTIAPOP_GIT", "git")
BESTIAPOP_TIMEOUT = float(os.getenv("BESTIAPOP_TIMEOUT") or 0) or None
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# stdout carries the MCP stream; diagnostics go to stderr
logging.basicConfig(
    level=LOG_LEVEL,
    stream=sys.stderr,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("bestiapop_mcp")

_ORCHESTRATOR: Optional[BestiapopOrchestrator] = None
_ORCHESTRATOR_LOCK = threading.Lock()


def get_orchestrator() -> BestiapopOrchestrator:
    global _ORCHESTRATOR
    with _ORCHESTRATOR_LOCK:
        if _ORCHESTRATOR is None:
            _ORCHESTRATOR = BestiapopOrchestrator(
                install_path=BESTIAPOP_HOME,
                repo_url=BESTIAPOP_REPO,
                python=BESTIAPOP_PYTHON,
                git=BESTIAPOP_GIT,
                timeout=BESTIAPOP_TIMEOUT,
                log=logger,
            )
        return _ORCHESTRATOR


# -----------------------------
# UTILITIES
# -----------------------------
def sha256_of_path(p: Path) -> str:
    h = hashlib.sha256()
    with p.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def write_manifest(out_dir: Path, extra: Dict[str, Any]) -> Dict[str, Any]:
    manifest = {"files": {}, **extra}
    for path in sorted(out_dir.rglob("*")):
        if path.is_file() and path.name != "manifest.json":
            rel = str(path.relative_to(out_dir))
            try:
                manifest["files"][rel] = sha256_of_path(path)
            except OSError as e:
                logger.warning("Skipping %s in manifest: %s", path, e)
    (out_dir / "manifest.json").write_text(json.dumps(manifest, indent=2))
    return manifest


def _error(exc: Exception) -> Dict[str, Any]:
    return {"ok": False, "error": type(exc).__name__, "details": str(exc)}


def _parse_iso(s: str) -> Optional[dt.date]:
    return dt.date.fromisoformat(s) if s else None


# -----------------------------
# TOOLS
# -----------------------------
app = FastMCP("bestiapop-mcp")


def install_status() -> Dict[str, Any]:
    """Report whether bestiapop is installed and where.

    Returns {installed, install_path, entry_script, repo_url}.
    """
    orch = get_orchestrator()
    return {
        "ok": True,
        "installed": orch.is_installed(),
        "install_path": str(orch.install_path),
        "entry_script": str(orch.entry_script),
        "repo_url": orch.repo_url,
    }


def install_bestiapop() -> Dict[str, Any]:
    """Clone bestiapop and install its requirements if it is not installed yet.

    Requires git on PATH and network access. A failed install leaves nothing behind.
    """
    orch = get_orchestrator()
    try:
        already = orch.ensure_installed()
    except AcquisitionError as exc:
        return _error(exc)
    return {
        "ok": True,
        "already_installed": already,
        "install_path": str(orch.install_path),
    }


def get_status() -> Dict[str, Any]:
    """Current stage of a running generate_weather call ("" when idle)."""
    return {"ok": True, "status": get_orchestrator().status}


def generate_weather(
    latitude: float,
    longitude: float,
    start_year: int,
    end_year: int,
    output_dir: str = "",
    multi_process: bool = False,
) -> Dict[str, Any]:
    """Generate an APSIM .met weather file from SILO data with bestiapop.

    Args:
        latitude: Decimal degrees, negative for south (e.g. -35.0 for Canberra).
        longitude: Decimal degrees, negative for west (e.g. 149.0).
        start_year: First calendar year of data.
        end_year: Last calendar year of data (>= start_year).
        output_dir: Directory to write into. Leave blank to use a fresh temp directory.
        multi_process: Run bestiapop in multi-process mode.

    Returns a dict with:
        ok: True if a weather file was produced and loaded
        met_file: Path to the generated .met file
        n_days, date_range: Extent of the loaded data
        latitude, longitude, tav, amp: Header constants of the file
        manifest_path: SHA-256 manifest of the output directory
    On failure: {ok: False, error: <error class>, details: <message incl. process output>}
    """
    try:
        request = AcquisitionRequest(
            latitude=latitude,
            longitude=longitude,
            start_year=start_year,
            end_year=end_year,
            output_dir=output_dir or None,
            multi_process=multi_process,
        )
    except ValidationError as e:
        return {"ok": False, "error": "invalid_payload", "details": json.loads(e.json())}

    try:
        series = get_orchestrator().generate_weather(request)
    except AcquisitionError as exc:
        logger.error("generate_weather failed: %s", exc)
        return _error(exc)

    met_file = Path(series.file_name)
    manifest_path = met_file.parent / "manifest.json"
    try:
        write_manifest(met_file.parent, {
            "request": json.loads(request.model_dump_json()),
            "met_file": met_file.name,
            "generated_at": dt.datetime.now(dt.timezone.utc).isoformat(),
        })
    except OSError as exc:
        logger.error("Could not write manifest in %s: %s", met_file.parent, exc)
        return _error(exc)

    return {
        "ok": True,
        "met_file": str(met_file),
        "output_dir": str(met_file.parent),
        "n_days": len(series),
        "date_range": f"{series.start_date} ~ {series.end_date}",
        "covers_request": series.covers_years(start_year, end_year),
        "latitude": series.latitude,
        "longitude": series.longitude,
        "tav": series.tav,
        "amp": series.amp,
        "manifest_path": str(manifest_path),
    }


def list_met_files(output_dir: str) -> Dict[str, Any]:
    """List .met files in a directory with their header constants and data range.

    Files are listed in file-name order; generate_weather always picks the first.
    """
    d = Path(output_dir)
    if not d.is_dir():
        return {"ok": False, "error": f"directory_not_found: {output_dir}"}

    files: List[Dict[str, Any]] = []
    for met in _list_met_files(d):
        try:
            hdr = parse_met_header(met, read_data_range=True)
        except MetFileError as exc:
            files.append({"file": met.name, "error": str(exc)})
            continue
        files.append({
            "file": met.name,
            "path": str(met),
            "constants": hdr["constants"],
            "columns": hdr["columns"],
            "data_start": hdr.get("data_start", ""),
            "data_end": hdr.get("data_end", ""),
            "n_days": hdr.get("n_days", 0),
        })
    return {"ok": True, "n_files": len(files), "output_dir": str(d), "files": files}


def read_weather(met_file: str, start_date: str = "", end_date: str = "") -> Dict[str, Any]:
    """Read daily records from a .met file.

    Args:
        met_file: Path to a .met file (e.g. the met_file returned by generate_weather).
        start_date: Optional first date "YYYY-MM-DD".
        end_date: Optional last date "YYYY-MM-DD".

    Each record holds radn, maxt, mint, rain, vp, wind, co2, airpressure plus
    mean_t, vpd, day_length (civil twilight, -6°), sun_rise and sun_set in hours.
    """
    try:
        start = _parse_iso(start_date)
        end = _parse_iso(end_date)
    except ValueError as e:
        return {"ok": False, "error": "invalid_date", "details": str(e)}

    try:
        series = read_met_file(met_file)
    except MetFileError as exc:
        return _error(exc)

    records = series.to_records(start, end)
    for rec in records:
        series.set_date(dt.date.fromisoformat(rec["date"]))
        rec["mean_t"] = round(series.mean_t, 2)
        rec["vpd"] = round(series.vpd, 2)
        rec["day_length"] = round(series.calculate_day_length(-6.0), 3)
        rec["sun_rise"] = round(series.calculate_sun_rise(), 3)
        rec["sun_set"] = round(series.calculate_sun_set(), 3)

    return {
        "ok": True,
        "met_file": series.file_name,
        "latitude": series.latitude,
        "tav": series.tav,
        "amp": series.amp,
        "n_records": len(records),
        "records": records,
    }


# Registered without the decorator so the plain functions stay directly callable
for _tool in (install_status, install_bestiapop, get_status, generate_weather, list_met_files, read_weather):
    app.tool()(_tool)


if __name__ == "__main__":
    # Run MCP server (stdio). fastmcp handles the transport for MCP-compatible clients.
    app.run()
