"""
met_utils.py — APSIM .met weather file → in-memory WeatherSeries

Usage:
    from met_utils import read_met_file

    series = read_met_file("bestiapop-output/Canberra.met")
    series.set_date(series.start_date)
    series.max_t, series.vpd, series.calculate_day_length(-6.0)

The .met format (as written by BestiaPop and read by APSIM):

    [weather.met.weather]
    latitude = -35.00 (DECIMAL DEGREES)
    tav = 13.2 (oC) ! annual average ambient temperature
    year  day  radn  maxt  mint  rain  vp
     ()    ()  (MJ/m^2) (oC) (oC) (mm) (hPa)
    2010    1  27.5  30.2  15.1   0.0 17.2
"""

from __future__ import annotations

import datetime as dt
import logging
import math
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pandas as pd
from pydantic import BaseModel

logger = logging.getLogger(__name__)

# ── Defaults used when a column is missing from the file ─────────────────────
DEFAULT_WIND = 3.0            # m/s
DEFAULT_CO2 = 350.0           # ppm
DEFAULT_AIR_PRESSURE = 1010.0  # hPa
SVP_FRACTION = 0.66           # weighting of maxt in daily VPD
SUN_ANGLE_RISE_SET = -0.833   # degrees, upper limb on the horizon incl. refraction

MET_EXTENSION = ".met"

_NUMERIC_COLUMNS = ["radn", "maxt", "mint", "rain", "vp", "evap", "wind", "co2", "airpressure"]
_CONSTANT_RE = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*=\s*([^!(]+?)\s*(\(([^)]*)\))?\s*(!.*)?$")


class MetFileError(ValueError):
    """Raised when a .met file is missing, empty or malformed."""


class DailyMet(BaseModel):
    date: dt.date
    radn: float
    maxt: float
    mint: float
    rain: float
    vp: float
    wind: float
    co2: float
    airpressure: float
    evap: Optional[float] = None


# ─────────────────────────────────────────────────────────────────────────────
# Physics helpers
# ─────────────────────────────────────────────────────────────────────────────

def svp(temp: float) -> float:
    """Saturated vapour pressure (hPa) at temperature ``temp`` (°C)."""
    return 6.1078 * math.exp(17.269 * temp / (237.3 + temp))


def day_length(day_of_year: int, sun_angle: float, latitude: float) -> float:
    """Hours between the sun crossing ``sun_angle`` degrees in the morning and evening.

    ``sun_angle`` is the solar altitude (+ve up, -ve down) that defines the
    start/end of the day, e.g. -6 for civil twilight or -0.833 for sunrise.
    Polar day/night saturate at 24/0 hours.
    """
    aeqnox = 79.25
    dg2rdn = (2.0 * math.pi) / 360.0
    decsol = 23.45116 * dg2rdn
    dy2rdn = (2.0 * math.pi) / 365.25
    rdn2hr = 24.0 / (2.0 * math.pi)

    sun_alt = sun_angle * dg2rdn
    dec = decsol * math.sin(dy2rdn * (day_of_year - aeqnox))

    if abs(latitude) == 90.0:
        coshra = math.copysign(1.0, -dec) * math.copysign(1.0, latitude)
    else:
        latrn = latitude * dg2rdn
        slsd = math.sin(latrn) * math.sin(dec)
        clcd = math.cos(latrn) * math.cos(dec)

        altmn = math.asin(min(max(slsd - clcd, -1.0), 1.0))
        altmx = math.asin(min(max(slsd + clcd, -1.0), 1.0))
        alt = min(max(sun_alt, altmn), altmx)

        coshra = (math.sin(alt) - slsd) / clcd
        coshra = min(max(coshra, -1.0), 1.0)

    hrangl = math.acos(coshra)
    return hrangl * rdn2hr * 2.0


# ─────────────────────────────────────────────────────────────────────────────
# WeatherSeries
# ─────────────────────────────────────────────────────────────────────────────

class WeatherSeries:
    """Daily weather loaded from a .met file, with a current-day cursor.

    Per-day properties (``max_t``, ``rain``, ...) refer to the cursor date,
    which starts at the first day in the file.
    """

    def __init__(self, data: pd.DataFrame, constants: Dict[str, Any], file_name: str = ""):
        if data.empty:
            raise MetFileError(f"No daily records in {file_name or 'weather data'}")
        self.data = data.sort_index()
        self.constants = constants
        self.file_name = file_name
        self._today: dt.date = self.start_date
        self._tav: Optional[float] = _as_float(constants.get("tav"))
        self._amp: Optional[float] = _as_float(constants.get("amp"))

    def __len__(self) -> int:
        return len(self.data)

    def __repr__(self) -> str:
        return f"WeatherSeries({self.file_name!r}, {self.start_date} ~ {self.end_date}, {len(self)} days)"

    # ── header constants ─────────────────────────────────────────
    @property
    def latitude(self) -> float:
        value = _as_float(self.constants.get("latitude"))
        if value is None:
            raise MetFileError(f"latitude constant missing from {self.file_name}")
        return value

    @property
    def longitude(self) -> Optional[float]:
        return _as_float(self.constants.get("longitude"))

    @property
    def tav(self) -> float:
        if self._tav is None:
            self._tav, self._amp = _calc_tav_amp(self.data)
        return self._tav

    @property
    def amp(self) -> float:
        if self._amp is None:
            self._tav, self._amp = _calc_tav_amp(self.data)
        return self._amp

    # ── range / cursor ───────────────────────────────────────────
    @property
    def start_date(self) -> dt.date:
        return self.data.index[0].date()

    @property
    def end_date(self) -> dt.date:
        return self.data.index[-1].date()

    @property
    def today(self) -> dt.date:
        return self._today

    def set_date(self, date: dt.date) -> None:
        if pd.Timestamp(date) not in self.data.index:
            raise KeyError(f"{date} is outside {self.file_name} ({self.start_date} ~ {self.end_date})")
        self._today = date

    def advance(self) -> dt.date:
        """Move the cursor one day forward and return the new date."""
        self.set_date(self._today + dt.timedelta(days=1))
        return self._today

    def covers_years(self, start_year: int, end_year: int) -> bool:
        return self.start_date <= dt.date(start_year, 1, 1) and self.end_date >= dt.date(end_year, 12, 31)

    def day(self, date: dt.date) -> DailyMet:
        row = self.data.loc[pd.Timestamp(date)]
        evap = row.get("evap")
        return DailyMet(
            date=date,
            radn=float(row["radn"]),
            maxt=float(row["maxt"]),
            mint=float(row["mint"]),
            rain=float(row["rain"]),
            vp=float(row["vp"]),
            wind=float(row["wind"]),
            co2=float(row["co2"]),
            airpressure=float(row["airpressure"]),
            evap=None if evap is None or pd.isna(evap) else float(evap),
        )

    @property
    def yesterdays_met_data(self) -> Optional[DailyMet]:
        date = self._today - dt.timedelta(days=1)
        return self.day(date) if pd.Timestamp(date) in self.data.index else None

    @property
    def tomorrows_met_data(self) -> Optional[DailyMet]:
        date = self._today + dt.timedelta(days=1)
        return self.day(date) if pd.Timestamp(date) in self.data.index else None

    # ── current-day values ───────────────────────────────────────
    def _get(self, column: str) -> float:
        return float(self.data.at[pd.Timestamp(self._today), column])

    def _set(self, column: str, value: float) -> None:
        self.data.at[pd.Timestamp(self._today), column] = float(value)

    max_t = property(lambda self: self._get("maxt"), lambda self, v: self._set("maxt", v))
    min_t = property(lambda self: self._get("mint"), lambda self, v: self._set("mint", v))
    rain = property(lambda self: self._get("rain"), lambda self, v: self._set("rain", v))
    radn = property(lambda self: self._get("radn"), lambda self, v: self._set("radn", v))
    vp = property(lambda self: self._get("vp"), lambda self, v: self._set("vp", v))
    wind = property(lambda self: self._get("wind"), lambda self, v: self._set("wind", v))
    co2 = property(lambda self: self._get("co2"), lambda self, v: self._set("co2", v))
    air_pressure = property(lambda self: self._get("airpressure"), lambda self, v: self._set("airpressure", v))

    @property
    def mean_t(self) -> float:
        return (self.max_t + self.min_t) / 2.0

    @property
    def vpd(self) -> float:
        """Daytime vapour pressure deficit (hPa), weighted towards maxt."""
        vpd_maxt = max(svp(self.max_t) - self.vp, 0.0)
        vpd_mint = max(svp(self.min_t) - self.vp, 0.0)
        return SVP_FRACTION * vpd_maxt + (1.0 - SVP_FRACTION) * vpd_mint

    # ── day length ───────────────────────────────────────────────
    def calculate_day_length(self, twilight: float) -> float:
        """Duration of the current day in hours.

        ``twilight`` is the solar altitude (degrees) marking the day's start and end.
        """
        return day_length(self._today.timetuple().tm_yday, twilight, self.latitude)

    def calculate_sun_rise(self) -> float:
        return 12.0 - self.calculate_day_length(SUN_ANGLE_RISE_SET) / 2.0

    def calculate_sun_set(self) -> float:
        return 12.0 + self.calculate_day_length(SUN_ANGLE_RISE_SET) / 2.0

    # ── host events ──────────────────────────────────────────────
    def on_commencing(self, sender: Any = None) -> None:
        self._today = self.start_date

    def on_start_of_simulation(self, sender: Any = None) -> None:
        pass

    def to_records(self, start: Optional[dt.date] = None, end: Optional[dt.date] = None) -> List[Dict[str, Any]]:
        df = self.data
        if start is not None:
            df = df[df.index >= pd.Timestamp(start)]
        if end is not None:
            df = df[df.index <= pd.Timestamp(end)]
        out = df.reset_index().rename(columns={"index": "date"})
        out["date"] = out["date"].dt.strftime("%Y-%m-%d")
        return out.astype(object).where(out.notna(), None).to_dict(orient="records")


# ─────────────────────────────────────────────────────────────────────────────
# Internal helpers
# ─────────────────────────────────────────────────────────────────────────────

def _as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _calc_tav_amp(df: pd.DataFrame):
    """Tav = mean of monthly mean temperatures; Amp = mean yearly (warmest - coldest month)."""
    mean_t = (df["maxt"] + df["mint"]) / 2.0
    monthly = mean_t.groupby([df.index.year, df.index.month]).mean()
    tav = float(monthly.mean())
    yearly_amp = monthly.groupby(level=0).agg(lambda s: s.max() - s.min())
    amp = float(yearly_amp.mean())
    return round(tav, 2), round(amp, 2)


def _split_header(lines: List[str], source: str):
    """Return (constants, units, column names, index of first data line)."""
    constants: Dict[str, Any] = {}
    units: Dict[str, str] = {}
    for i, raw in enumerate(lines):
        ln = raw.strip()
        if not ln or ln.startswith("!") or ln.startswith("["):
            continue
        m = _CONSTANT_RE.match(ln)
        if m and "=" in ln:
            name = m.group(1).lower()
            value = m.group(2).strip()
            constants[name] = _as_float(value) if _as_float(value) is not None else value
            if m.group(4):
                units[name] = m.group(4)
            continue
        columns = [c.lower() for c in ln.split()]
        first_data = i + 1
        # Units line directly below column names: "() () (MJ/m^2) ..."
        if first_data < len(lines) and lines[first_data].strip().startswith("("):
            unit_tokens = lines[first_data].split()
            for col, unit in zip(columns, unit_tokens):
                units[col] = unit.strip("()")
            first_data += 1
        return constants, units, columns, first_data
    raise MetFileError(f"No column header line found in {source}")


def _parse_dates(df: pd.DataFrame, source: str) -> pd.DatetimeIndex:
    if "year" in df.columns and "day" in df.columns:
        years = pd.to_numeric(df["year"], errors="coerce")
        days = pd.to_numeric(df["day"], errors="coerce")
        if years.isna().any() or days.isna().any():
            raise MetFileError(f"Non-numeric year/day values in {source}")
        base = pd.to_datetime(years.astype(int).astype(str) + "-01-01")
        return pd.DatetimeIndex(base + pd.to_timedelta(days.astype(int) - 1, unit="D"))
    if "date" in df.columns:
        iso = pd.to_datetime(df["date"], format="%Y-%m-%d", errors="coerce")
        dmy = pd.to_datetime(df["date"], format="%d/%m/%Y", errors="coerce")
        dates = iso.fillna(dmy)
        if dates.isna().any():
            raise MetFileError(f"Unrecognised date values in {source}")
        return pd.DatetimeIndex(dates)
    raise MetFileError(f"{source} needs either year+day or date columns")


def _build_df(rows: List[List[str]], columns: List[str], source: str) -> pd.DataFrame:
    if not rows:
        raise MetFileError(f"No daily records in {source}")
    width = len(columns)
    bad = [r for r in rows if len(r) != width]
    if bad:
        raise MetFileError(f"{source}: expected {width} values per row, got {len(bad[0])} in '{' '.join(bad[0])}'")

    df = pd.DataFrame(rows, columns=columns)
    index = _parse_dates(df, source)
    df = df.drop(columns=[c for c in ("year", "day", "date") if c in df.columns])
    for col in df.columns:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df.index = index

    for col in ("radn", "maxt", "mint", "rain"):
        if col not in df.columns:
            raise MetFileError(f"Required column '{col}' missing from {source}")
        if df[col].isna().any():
            raise MetFileError(f"Missing '{col}' values in {source}")

    # VP falls back to saturation at the minimum temperature
    if "vp" not in df.columns:
        df["vp"] = df["mint"].apply(lambda t: max(0.0, svp(t)))
    if "wind" not in df.columns:
        df["wind"] = DEFAULT_WIND
    if "co2" not in df.columns:
        df["co2"] = DEFAULT_CO2
    if "airpressure" not in df.columns:
        df["airpressure"] = DEFAULT_AIR_PRESSURE

    ordered = [c for c in _NUMERIC_COLUMNS if c in df.columns]
    extra = [c for c in df.columns if c not in ordered]
    return df[ordered + extra]


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────

def read_met_file(path: Union[str, Path, None]) -> WeatherSeries:
    """Load a .met file into a WeatherSeries.

    Raises MetFileError if the path is empty, missing or malformed, or the
    header has no numeric latitude (needed for day length).
    """
    if not path:
        raise MetFileError("No .met file path given")
    p = Path(path)
    if not p.is_file():
        raise MetFileError(f".met file not found: {p}")

    lines = p.read_text(errors="replace").splitlines()
    constants, _units, columns, first_data = _split_header(lines, str(p))
    rows = []
    for ln in lines[first_data:]:
        stripped = ln.split("!", 1)[0].strip()
        if stripped:
            rows.append(stripped.split())
    df = _build_df(rows, columns, str(p))
    if _as_float(constants.get("latitude")) is None:
        raise MetFileError(f"latitude constant missing from {p}")
    logger.debug("Read %d days from %s", len(df), p)
    return WeatherSeries(df, constants, file_name=str(p))


def parse_met_header(path: Union[str, Path], read_data_range: bool = False) -> Dict[str, Any]:
    """Parse the header block of a .met file.

    Returns dict: {constants, units, columns}
    If read_data_range=True, also returns {data_start, data_end, n_days};
    these are "" / 0 when the data block cannot be read.
    """
    p = Path(path)
    lines = p.read_text(errors="replace").splitlines()
    constants, units, columns, first_data = _split_header(lines, str(p))
    result: Dict[str, Any] = {"constants": constants, "units": units, "columns": columns}
    if read_data_range:
        try:
            series = read_met_file(p)
            result["data_start"] = series.start_date.isoformat()
            result["data_end"] = series.end_date.isoformat()
            result["n_days"] = len(series)
        except MetFileError as e:
            logger.warning("Could not read data range of %s: %s", p, e)
            result.update({"data_start": "", "data_end": "", "n_days": 0})
    return result


def list_met_files(directory: Union[str, Path]) -> List[Path]:
    """All .met files directly inside ``directory``, sorted by file name."""
    d = Path(directory)
    if not d.is_dir():
        return []
    return sorted((f for f in d.iterdir() if f.is_file() and f.suffix.lower() == MET_EXTENSION),
                  key=lambda f: f.name)


def find_met_file(directory: Union[str, Path]) -> Optional[Path]:
    """The lexicographically first .met file in ``directory``, or None."""
    files = list_met_files(directory)
    return files[0] if files else None
