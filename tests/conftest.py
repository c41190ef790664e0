"""Shared fixtures: .met file builders, a scripted command runner and a fake simulation host."""
import datetime as dt
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from weather_acquisition import ExecutionError  # noqa: E402


def make_met_text(start_year: int = 2010, end_year: int = 2010, latitude: float = -35.0,
                  with_tav: bool = True, with_vp: bool = True) -> str:
    lines = [
        "[weather.met.weather]",
        "!station generated by bestiapop",
        f"latitude = {latitude} (DECIMAL DEGREES)",
        "longitude = 149.0 (DECIMAL DEGREES)",
    ]
    if with_tav:
        lines += [
            "tav = 13.2 (oC) ! annual average ambient temperature",
            "amp = 14.1 (oC) ! annual amplitude in mean monthly temperature",
        ]
    cols = "year day radn maxt mint rain vp evap" if with_vp else "year day radn maxt mint rain evap"
    units = "() () (MJ/m^2) (oC) (oC) (mm) (hPa) (mm)" if with_vp else "() () (MJ/m^2) (oC) (oC) (mm) (mm)"
    lines += [cols, units]
    day = dt.date(start_year, 1, 1)
    while day.year <= end_year:
        doy = day.timetuple().tm_yday
        # Warm January, cold July, like a southern-hemisphere site
        maxt = 20.0 + 8.0 * (1 if day.month in (12, 1, 2) else -1 if day.month in (6, 7, 8) else 0)
        mint = maxt - 12.0
        rain = 5.0 if doy % 7 == 0 else 0.0
        row = f"{day.year} {doy} 20.5 {maxt:.1f} {mint:.1f} {rain:.1f}"
        if with_vp:
            row += " 12.0"
        row += " 4.2"
        lines.append(row)
        day += dt.timedelta(days=1)
    return "\n".join(lines) + "\n"


@pytest.fixture
def write_met(tmp_path):
    def _write(name: str = "weather.met", directory: Optional[Path] = None, **kwargs) -> Path:
        d = directory or tmp_path
        d.mkdir(parents=True, exist_ok=True)
        p = d / name
        p.write_text(make_met_text(**kwargs))
        return p
    return _write


class FakeRunner:
    """Stands in for run_command; records calls and plays scripted outcomes.

    ``met_files`` are written into the working directory of the bestiapop call.
    ``fail_on`` maps a program keyword ("clone", "pip", "bestiapop") to an exception.
    """

    def __init__(self, met_files: Optional[Dict[str, str]] = None, fail_on: Optional[Dict[str, Exception]] = None,
                 output: str = "Climate file written\n"):
        self.calls: List[Dict[str, Any]] = []
        self.met_files = met_files if met_files is not None else {"-35.0-149.0.met": make_met_text()}
        self.fail_on = fail_on or {}
        self.output = output

    def _kind(self, args) -> str:
        argv = [str(a) for a in args]
        if "clone" in argv:
            return "clone"
        if "pip" in argv:
            return "pip"
        return "bestiapop"

    def __call__(self, args, cwd, timeout=None, cancel=None) -> str:
        kind = self._kind(args)
        self.calls.append({"kind": kind, "args": [str(a) for a in args], "cwd": Path(cwd)})
        if kind in self.fail_on:
            raise self.fail_on[kind]
        if kind == "clone":
            target = Path(args[-1])
            (target / "bestiapop").mkdir(parents=True)
            (target / "requirements.txt").write_text("pandas\n")
        elif kind == "bestiapop":
            for name, text in self.met_files.items():
                (Path(cwd) / name).write_text(text)
        return self.output

    def kinds(self) -> List[str]:
        return [c["kind"] for c in self.calls]


class FakeHost:
    """Records the wiring calls a running simulation would receive."""

    def __init__(self, running: bool = True, fail_on: Optional[str] = None):
        self.running = running
        self.fail_on = fail_on
        self.events: List[str] = []
        self.attached: List[Any] = []

    @property
    def is_running(self) -> bool:
        return self.running

    def _maybe_fail(self, step: str) -> None:
        if self.fail_on == step:
            raise RuntimeError(f"host refused {step}")

    def attach(self, component) -> None:
        self.events.append("attach")
        self.attached.append(component)

    def detach(self, component) -> None:
        self.events.append("detach")
        self.attached.remove(component)

    def resolve_links(self, component) -> None:
        self.events.append("resolve_links")
        self._maybe_fail("resolve_links")

    def publish(self, event_name, sender, component) -> None:
        self.events.append(f"publish:{event_name}")
        self._maybe_fail(event_name)
        handler = {"Commencing": component.on_commencing,
                   "StartOfSimulation": component.on_start_of_simulation}[event_name]
        handler(sender)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def installed_path(tmp_path) -> Path:
    p = tmp_path / "apps" / "bestiapop"
    (p / "bestiapop").mkdir(parents=True)
    (p / "bestiapop" / "bestiapop.py").write_text("# placeholder\n")
    return p


def failed_run(output: str = "ERROR: SILO request failed\n") -> ExecutionError:
    return ExecutionError("python bestiapop.py", 1, output)
