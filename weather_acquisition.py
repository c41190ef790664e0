"""
weather_acquisition.py — generate weather on the fly with BestiaPop

Wraps the BestiaPop python tool (https://github.com/JJguri/bestiapop) to build
a SILO-backed .met file for a latitude/longitude/year range and load it as a
WeatherSeries.

    orchestrator = BestiapopOrchestrator(install_path=Path("~/.bestiapop").expanduser())
    series = orchestrator.generate_weather(
        AcquisitionRequest(latitude=-35.0, longitude=149.0, start_year=2010, end_year=2010)
    )

Assumes git is on PATH; dependencies are installed with ``<python> -m pip``.
Nothing is retried: every failure surfaces as an AcquisitionError subclass
chained to its cause.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Sequence, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, model_validator

from met_utils import MetFileError, WeatherSeries, find_met_file, read_met_file

logger = logging.getLogger(__name__)

BESTIAPOP_URL = "https://github.com/JJguri/bestiapop"

STATUS_IDLE = ""
STATUS_INSTALLING = "Installing bestiapop"
STATUS_RUNNING = "Running bestiapop"

# SILO variables requested from bestiapop
CLIMATE_VARIABLES = [
    "daily_rain", "max_temp", "min_temp", "vp", "vp_deficit",
    "evap_pan", "radiation", "et_short_crop",
]

_POLL_SECONDS = 0.2


# -----------------------------
# ERRORS
# -----------------------------
class AcquisitionError(Exception):
    """Base class for every weather acquisition failure."""


class InstallationError(AcquisitionError):
    """BestiaPop could not be cloned or its requirements installed."""


class LaunchError(AcquisitionError):
    """A child process could not be started."""


class ExecutionError(AcquisitionError):
    """A child process exited with a non-zero code."""

    def __init__(self, command: str, returncode: Optional[int], output: str, message: str = ""):
        self.command = command
        self.returncode = returncode
        self.output = output
        msg = message or f"Error while running command '{command}' (exit code {returncode})"
        super().__init__(f"{msg}. Process output:\n{output}")


class AcquisitionTimeout(ExecutionError):
    """The child process ran past the configured timeout and was killed."""


class AcquisitionCancelled(AcquisitionError):
    """Cancellation was requested while a child process was running."""


class OutputDirectoryError(AcquisitionError):
    """The output directory could not be created."""


class OutputNotFoundError(AcquisitionError):
    """BestiaPop exited cleanly but left no .met file behind."""


class AdaptationError(AcquisitionError):
    """The generated file could not be turned into a usable WeatherSeries."""


# -----------------------------
# REQUEST SCHEMA / HOST CONTRACT
# -----------------------------
class AcquisitionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90, le=90, description="Decimal degrees, -ve south")
    longitude: float = Field(ge=-180, le=180, description="Decimal degrees, -ve west")
    start_year: int = Field(ge=1889, description="SILO data starts in 1889")
    end_year: int
    output_dir: Optional[str] = Field(default=None, description="Blank = generated temp directory")
    multi_process: bool = Field(default=False, description="Run bestiapop with -m")

    @model_validator(mode="after")
    def _check_years(self) -> "AcquisitionRequest":
        if self.start_year > self.end_year:
            raise ValueError(f"start_year ({self.start_year}) is after end_year ({self.end_year})")
        return self


@runtime_checkable
class Initializer(Protocol):
    """Link/event wiring offered by a running simulation host."""

    @property
    def is_running(self) -> bool: ...

    def attach(self, component: Any) -> None: ...

    def detach(self, component: Any) -> None: ...

    def resolve_links(self, component: Any) -> None: ...

    def publish(self, event_name: str, sender: Any, component: Any) -> None: ...


ProgressCallback = Callable[[str], None]
CommandRunner = Callable[..., str]


# -----------------------------
# CHILD PROCESSES
# -----------------------------
def format_command(args: Sequence[Union[str, Path]]) -> str:
    return subprocess.list2cmdline([str(a) for a in args])


def run_command(
    args: Sequence[Union[str, Path]],
    cwd: Union[str, Path],
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> str:
    """Run a command and return its combined stdout/stderr.

    Output is drained while waiting so the child never blocks on a full pipe.
    Raises LaunchError, ExecutionError, AcquisitionTimeout or AcquisitionCancelled.
    """
    argv = [str(a) for a in args]
    command = format_command(argv)
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
    except OSError as err:
        raise LaunchError(f"Unable to start '{command}' from directory '{cwd}': {err}") from err

    waited = 0.0
    while True:
        step = _POLL_SECONDS if cancel is not None else timeout
        if timeout is not None and step is not None:
            step = min(step, max(timeout - waited, 0.0))
        try:
            output, _ = proc.communicate(timeout=step)
            break
        except subprocess.TimeoutExpired:
            waited += step or 0.0
            if cancel is not None and cancel.is_set():
                proc.kill()
                proc.communicate()
                raise AcquisitionCancelled(f"Cancelled while running '{command}'")
            if timeout is not None and waited >= timeout:
                proc.kill()
                output, _ = proc.communicate()
                raise AcquisitionTimeout(
                    command, None, output or "",
                    message=f"Command '{command}' timed out after {timeout:g} s",
                )

    if proc.returncode != 0:
        raise ExecutionError(command, proc.returncode, output or "")
    return output or ""


def _format_number(value: float) -> str:
    # -35.0 -> "-35", 149.25 -> "149.25"
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


# -----------------------------
# ORCHESTRATOR
# -----------------------------
class BestiapopOrchestrator:
    """Install-on-demand BestiaPop runner producing WeatherSeries objects.

    Only one acquisition may run per instance at a time. ``status`` is safe to
    read from other threads.
    """

    def __init__(
        self,
        install_path: Union[str, Path],
        repo_url: str = BESTIAPOP_URL,
        python: str = sys.executable,
        git: str = "git",
        timeout: Optional[float] = None,
        initializer: Optional[Initializer] = None,
        runner: CommandRunner = run_command,
        log: Optional[logging.Logger] = None,
    ):
        self.install_path = Path(install_path)
        self.repo_url = repo_url
        self.python = python
        self.git = git
        self.timeout = timeout
        self.initializer = initializer
        self.runner = runner
        self.log = log or logger
        self._status = STATUS_IDLE
        self._status_lock = threading.Lock()
        self._busy = threading.Lock()
        self._install_lock = threading.Lock()

    # ── status ───────────────────────────────────────────────────
    @property
    def status(self) -> str:
        with self._status_lock:
            return self._status

    def _set_status(self, value: str, progress: Optional[ProgressCallback]) -> None:
        with self._status_lock:
            self._status = value
        if progress is not None:
            progress(value)

    @property
    def entry_script(self) -> Path:
        return self.install_path / "bestiapop" / "bestiapop.py"

    def is_installed(self) -> bool:
        return self.install_path.exists()

    # ── installation ─────────────────────────────────────────────
    def ensure_installed(self, cancel: Optional[threading.Event] = None) -> bool:
        """Clone bestiapop and install its requirements unless already present.

        Returns True if it was already installed. On any failure the partial
        install directory is removed and InstallationError is raised.
        Concurrent callers wait for one install instead of cloning twice.
        """
        with self._install_lock:
            if self.is_installed():
                return True
            return self._install(cancel)

    def _install(self, cancel: Optional[threading.Event]) -> bool:
        self.log.info("Installing bestiapop from %s to %s", self.repo_url, self.install_path)
        try:
            self.install_path.parent.mkdir(parents=True, exist_ok=True)
            self._clone(cancel)
            self._install_deps(cancel)
        except AcquisitionCancelled:
            self._remove_partial_install()
            raise
        except Exception as err:
            self._remove_partial_install()
            raise InstallationError(f"Unable to install bestiapop to {self.install_path}: {err}") from err
        return False

    def _clone(self, cancel: Optional[threading.Event]) -> None:
        try:
            self.runner(
                [self.git, "clone", self.repo_url, str(self.install_path)],
                cwd=self.install_path.parent, timeout=self.timeout, cancel=cancel,
            )
        except (LaunchError, ExecutionError) as err:
            raise InstallationError(f"Unable to clone bestiapop - is git installed and on PATH? ({err})") from err

    def _install_deps(self, cancel: Optional[threading.Event]) -> None:
        try:
            self.runner(
                [self.python, "-m", "pip", "install", "-r", "requirements.txt"],
                cwd=self.install_path, timeout=self.timeout, cancel=cancel,
            )
        except (LaunchError, ExecutionError) as err:
            raise InstallationError(f"Unable to install bestiapop requirements - is pip available? ({err})") from err

    def _remove_partial_install(self) -> None:
        if not self.install_path.exists():
            return
        try:
            shutil.rmtree(self.install_path)
        except OSError as cleanup_err:
            # Keep the original install error as the one that propagates
            self.log.warning("Could not remove partial bestiapop install at %s: %s",
                             self.install_path, cleanup_err)

    # ── generation ───────────────────────────────────────────────
    def resolve_output_dir(self, request: AcquisitionRequest) -> Path:
        if request.output_dir:
            output = Path(request.output_dir)
        else:
            output = Path(tempfile.gettempdir()) / f"bestiapop-{uuid.uuid4()}"
            self.log.info("OutputPath was not specified. Files will be generated to temp directory: '%s'", output)
        try:
            output.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise OutputDirectoryError(f"Unable to create output directory {output}: {err}") from err
        return output

    def build_command(self, request: AcquisitionRequest, output_dir: Path) -> List[str]:
        args = [
            self.python, str(self.entry_script),
            "-a", "generate-climate-file",
            "-s", "silo",
            "-y", f"{request.start_year}-{request.end_year}",
            "-lat", _format_number(request.latitude),
            "-lon", _format_number(request.longitude),
            "-c", " ".join(CLIMATE_VARIABLES),
        ]
        if request.multi_process:
            args.append("-m")
        args += ["-o", str(output_dir)]
        return args

    def generate_weather(
        self,
        request: AcquisitionRequest,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> WeatherSeries:
        """Run bestiapop for ``request`` and return the resulting WeatherSeries."""
        if not self._busy.acquire(blocking=False):
            raise AcquisitionError("A bestiapop acquisition is already running on this orchestrator")
        try:
            if not self.is_installed():
                self._set_status(STATUS_INSTALLING, progress)
                self.ensure_installed(cancel)

            output = self.resolve_output_dir(request)
            args = self.build_command(request, output)
            command = format_command(args)

            self.log.info("Running bestiapop with command: '%s' from directory %s", command, output)
            self._set_status(STATUS_RUNNING, progress)
            stdout = self.runner(args, cwd=output, timeout=self.timeout, cancel=cancel)
            self.log.info("Ran command '%s' from directory '%s'. Output from bestiapop:\n%s",
                          command, output, stdout)

            met_file = find_met_file(output)
            if met_file is None:
                raise OutputNotFoundError(f"bestiapop produced no .met file in {output} (command: '{command}')")

            series = self.create_weather_component(met_file)
            if not series.covers_years(request.start_year, request.end_year):
                self.log.warning("%s covers %s ~ %s, requested %d-%d",
                                 met_file.name, series.start_date, series.end_date,
                                 request.start_year, request.end_year)
            return series
        finally:
            self._set_status(STATUS_IDLE, progress)
            self._busy.release()

    def create_weather_component(self, met_file: Optional[Path]) -> WeatherSeries:
        """Load ``met_file`` and wire it into the host when a simulation is running."""
        if met_file is None:
            raise OutputNotFoundError("No .met file to load")
        try:
            series = read_met_file(met_file)
        except MetFileError as err:
            raise AdaptationError(f"Unable to read generated weather file {met_file}: {err}") from err

        host = self.initializer
        if host is None or not host.is_running:
            return series

        try:
            # Links only resolve while the component sits in the host's tree
            host.attach(series)
            try:
                host.resolve_links(series)
            finally:
                host.detach(series)
            host.publish("Commencing", self, series)
            host.publish("StartOfSimulation", self, series)
        except Exception as err:
            raise AdaptationError(f"Simulation host rejected weather component {met_file.name}: {err}") from err
        return series
