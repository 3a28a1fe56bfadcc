#!/usr/bin/env python3
# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# ───────────────────────────────────────────────────────────────────────
from __future__ import annotations

import argparse
import copy
import csv
import enum
import functools
import io
import itertools
import json
import logging
import math
import os
import re
import shlex
import shutil
import socket
import statistics
import subprocess
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence

import psutil

try:
    import yaml
    YAML_AVAILABLE = True
except ImportError:
    YAML_AVAILABLE = False
try:
    import setproctitle
    SETPROCTITLE_AVAILABLE = True
except ImportError:
    SETPROCTITLE_AVAILABLE = False

logger = logging.getLogger("mdgauge")

# ───────────────────────────────────────────────────────────────────────
# CONSTANTS  ────────────────────────────────────────────────────────────
APP_NAME = "MDgauge"

CPU = "cpu"
GPU = "gpu"
AUTO = "auto"
PLACEMENTS = (CPU, GPU)
AXES = ("nb", "pme", "pmefft", "bonded", "update")
CHANNELS = (CPU, GPU)

# Seconds between telemetry polls
CPU_SAMPLE_PERIOD_S = 0.05
GPU_SAMPLE_PERIOD_S = 0.15
SAMPLER_STOP_GRACE_S = 2.0

NORMALIZATION_STEPS = 10_000

BENCHMARK_TIME_ENERGY = "time_energy"
BENCHMARK_TIME = "time"
BENCHMARK_MODES = {
    BENCHMARK_TIME_ENERGY: "Time performance and energy consumption",
    BENCHMARK_TIME: "Time performance",
}
ENERGY_METHODS = ("mean_power", "integral")

POWER_METRIC = "package_power"
METRIC_UNITS = {
    "frequency": "MHz",
    "utilization": "percent",
    POWER_METRIC: "W",
}

TRIAL_STORE_NAME = "benchmark_mdrun.tsv"
TELEMETRY_STORE_NAMES = {CPU: "benchmark_cpu.tsv", GPU: "benchmark_gpu.tsv"}
ANALYZED_RESULTS_NAME = "analyzed_results.tsv"
PREPARATION_DIR_NAME = "preparation_files"
DEFAULT_RAPL_DIR = "/sys/class/powercap/intel-rapl:0"


# ───────────────────────────────────────────────────────────────────────
# 1.  ERRORS  ───────────────────────────────────────────────────────────
def _context(configuration, replicate) -> str:
    parts = []
    if configuration is not None:
        parts.append(f"configuration '{configuration}'")
    if replicate is not None:
        parts.append(f"replicate {replicate}")
    return f" ({', '.join(parts)})" if parts else ""


class MDGaugeError(Exception):
    """Base class for every error MDgauge raises on purpose."""


class ConfigError(MDGaugeError):
    """Invalid run settings or configuration file."""


class EngineFailure(MDGaugeError):
    """The simulation engine exited with a nonzero status (or never finished)."""

    def __init__(self, message: str, configuration=None, replicate: Optional[int] = None,
                 exit_code: Optional[int] = None, stage: str = "mdrun"):
        self.configuration = configuration
        self.replicate = replicate
        self.exit_code = exit_code
        self.stage = stage
        super().__init__(f"{message}{_context(configuration, replicate)}")


class ParseError(MDGaugeError):
    """Required fields are missing from the engine's performance log."""

    def __init__(self, message: str, configuration=None, replicate: Optional[int] = None):
        self.configuration = configuration
        self.replicate = replicate
        super().__init__(f"{message}{_context(configuration, replicate)}")


class TelemetryGap(MDGaugeError):
    """A single telemetry poll returned nothing usable."""


# ───────────────────────────────────────────────────────────────────────
# 2.  CONFIGURATION SPACE  ──────────────────────────────────────────────
@functools.total_ordering
class ConfigurationKey:
    """Placement of the five mdrun task axes, or the automatic control.

    The automatic control carries ``auto`` on every axis and passes no
    placement flags to mdrun. Keys compare and hash by their canonical label,
    e.g. ``nb=gpu pme=cpu pmefft=cpu bonded=cpu update=cpu``.
    """

    __slots__ = ("_placements",)

    def __init__(self, nb: str, pme: str, pmefft: str, bonded: str, update: str):
        placements = (nb, pme, pmefft, bonded, update)
        is_auto = all(p == AUTO for p in placements)
        if not is_auto and any(p not in PLACEMENTS for p in placements):
            raise ValueError(
                f"Invalid placement {dict(zip(AXES, placements))}: every axis must be "
                f"one of {PLACEMENTS}, or all axes '{AUTO}'"
            )
        object.__setattr__(self, "_placements", placements)

    def __setattr__(self, name, value):
        raise AttributeError("ConfigurationKey is immutable")

    @classmethod
    def automatic(cls) -> "ConfigurationKey":
        return cls(AUTO, AUTO, AUTO, AUTO, AUTO)

    @classmethod
    def parse(cls, label: str) -> "ConfigurationKey":
        """Inverse of ``str(key)``."""
        fields = {}
        for token in label.split():
            axis, sep, placement = token.partition("=")
            if not sep or axis not in AXES or axis in fields:
                raise ValueError(f"Malformed configuration label: {label!r}")
            fields[axis] = placement
        if set(fields) != set(AXES):
            raise ValueError(f"Configuration label must name all of {AXES}: {label!r}")
        return cls(**fields)

    @property
    def nb(self) -> str:
        return self._placements[0]

    @property
    def pme(self) -> str:
        return self._placements[1]

    @property
    def pmefft(self) -> str:
        return self._placements[2]

    @property
    def bonded(self) -> str:
        return self._placements[3]

    @property
    def update(self) -> str:
        return self._placements[4]

    @property
    def is_automatic(self) -> bool:
        return self._placements[0] == AUTO

    def as_dict(self) -> Dict[str, str]:
        return dict(zip(AXES, self._placements))

    def mdrun_flags(self) -> List[str]:
        if self.is_automatic:
            return []
        flags = []
        for axis, placement in zip(AXES, self._placements):
            flags.extend([f"-{axis}", placement])
        return flags

    def __str__(self):
        return " ".join(f"{axis}={placement}" for axis, placement in zip(AXES, self._placements))

    def __repr__(self):
        return f"ConfigurationKey({str(self)!r})"

    def __eq__(self, other):
        if not isinstance(other, ConfigurationKey):
            return NotImplemented
        return str(self) == str(other)

    def __lt__(self, other):
        if not isinstance(other, ConfigurationKey):
            return NotImplemented
        return str(self) < str(other)

    def __hash__(self):
        return hash(str(self))


def is_admissible(key: ConfigurationKey) -> bool:
    """A later mdrun task can only be offloaded when the tasks it depends on are."""
    if key.is_automatic:
        return True
    if key.update == GPU and key.pme == CPU and key.nb == CPU:
        return False
    if key.bonded == GPU and key.nb == CPU:
        return False
    if key.pmefft == GPU and key.pme == CPU:
        return False
    if key.pme == GPU and key.nb == CPU:
        return False
    return True


def all_placements() -> Iterator[ConfigurationKey]:
    """Every raw 5-tuple, nb outermost and update innermost, cpu before gpu."""
    for placements in itertools.product(PLACEMENTS, repeat=len(AXES)):
        yield ConfigurationKey(*placements)


def enumerate_configurations(include_automatic: bool = True) -> Iterator[ConfigurationKey]:
    """Automatic control first, then every admissible placement in nesting order."""
    if include_automatic:
        yield ConfigurationKey.automatic()
    for key in all_placements():
        if is_admissible(key):
            yield key


# ───────────────────────────────────────────────────────────────────────
# 3.  MDRUN LOG PARSER  ─────────────────────────────────────────────────
class TrialRecord(NamedTuple):
    configuration: Optional[ConfigurationKey]
    replicate: int
    wall_time_s: float
    ns_per_day: float
    hours_per_ns: float


_TIME_LINE = re.compile(r"^\s*Time:")
_PERFORMANCE_LINE = re.compile(r"^\s*Performance:")


def _last_matching_line(text: str, pattern) -> Optional[str]:
    found = None
    for line in text.splitlines():
        if pattern.match(line):
            found = line
    return found


def parse_mdrun_log(text: str, configuration: Optional[ConfigurationKey] = None,
                    replicate: int = 0) -> TrialRecord:
    """Extract wall time and throughput from the tail of an mdrun log.

    The accounting block at the end of the log looks like::

                       Core t (s)   Wall t (s)        (%)
               Time:      123.456       10.289     1199.9
                         (ns/day)    (hour/ns)
        Performance:       16.789        1.429

    Both lines are required.
    """
    performance_line = _last_matching_line(text, _PERFORMANCE_LINE)
    if performance_line is None:
        raise ParseError("Line with performance not found in mdrun log", configuration, replicate)
    time_line = _last_matching_line(text, _TIME_LINE)
    if time_line is None:
        raise ParseError("Line with time not found in mdrun log", configuration, replicate)

    time_fields = time_line.split()
    performance_fields = performance_line.split()
    try:
        wall_time_s = float(time_fields[2])
        ns_per_day = float(performance_fields[1])
        hours_per_ns = float(performance_fields[2])
    except (IndexError, ValueError) as e:
        raise ParseError(
            f"Malformed mdrun accounting lines {time_line.strip()!r} / {performance_line.strip()!r}",
            configuration, replicate,
        ) from e
    return TrialRecord(configuration, replicate, wall_time_s, ns_per_day, hours_per_ns)


def parse_mdrun_log_file(path, configuration: Optional[ConfigurationKey] = None,
                         replicate: int = 0) -> TrialRecord:
    try:
        text = Path(path).read_text(errors="replace")
    except FileNotFoundError as e:
        raise ParseError(f"mdrun log {path} not found", configuration, replicate) from e
    return parse_mdrun_log(text, configuration, replicate)


# ───────────────────────────────────────────────────────────────────────
# 4.  STATISTICS  ───────────────────────────────────────────────────────
def mean(xs: Sequence[float]) -> float:
    """Arithmetic mean. Raises statistics.StatisticsError on empty input."""
    return statistics.mean(xs)


def sample_stddev(xs: Sequence[float]) -> float:
    """Sample standard deviation (n-1 denominator); nan when n < 2."""
    if len(xs) < 2:
        return math.nan
    return statistics.stdev(xs)


def energy(wall_times: Sequence[float], powers: Sequence[float]) -> List[float]:
    """Per-trial energy in Joules: wall time (s) times mean power (W)."""
    if len(wall_times) != len(powers):
        raise ValueError(f"Got {len(wall_times)} wall times but {len(powers)} powers")
    return [t * p for t, p in zip(wall_times, powers)]


def trapezoidal_integral(timestamps: Sequence[float], values: Sequence[float]) -> float:
    if len(timestamps) != len(values):
        raise ValueError(f"Got {len(timestamps)} timestamps but {len(values)} values")
    total = 0.0
    for i in range(1, len(timestamps)):
        total += (timestamps[i] - timestamps[i - 1]) * (values[i] + values[i - 1]) / 2.0
    return total


def summarize(values: Sequence[float]):
    """(mean, sample SD), propagating nan from any missing per-trial value."""
    if any(math.isnan(v) for v in values):
        return math.nan, math.nan
    return mean(values), sample_stddev(values)


def _power_series(samples, replicate: int):
    return sorted(
        (s.timestamp, s.value) for s in samples
        if s.replicate == replicate and s.metric == POWER_METRIC
    )


def mean_power(samples, replicate: int) -> float:
    """Mean package power of one trial; nan if the trial has no power samples."""
    series = _power_series(samples, replicate)
    if not series:
        return math.nan
    return mean([value for _, value in series])


def integrated_energy(samples, replicate: int) -> float:
    """Energy of one trial from the trapezoidal integral of its power series."""
    series = _power_series(samples, replicate)
    if not series:
        return math.nan
    return trapezoidal_integral([t for t, _ in series], [v for _, v in series])


def trial_energy(samples, replicate: int, wall_time_s: float, method: str = "mean_power") -> float:
    """Energy (J) of one trial from its package power samples."""
    if method == "mean_power":
        return energy([wall_time_s], [mean_power(samples, replicate)])[0]
    if method == "integral":
        return integrated_energy(samples, replicate)
    raise ValueError(f"Unknown energy method {method!r}; expected one of {ENERGY_METHODS}")


def channel_energies(samples, trials: Sequence[TrialRecord], method: str = "mean_power") -> List[float]:
    """One energy figure per trial for a single telemetry channel."""
    if method == "mean_power":
        powers = [mean_power(samples, t.replicate) for t in trials]
        return energy([t.wall_time_s for t in trials], powers)
    return [trial_energy(samples, t.replicate, t.wall_time_s, method) for t in trials]


def per_steps(value: Optional[float], steps: int) -> Optional[float]:
    """Scale a per-run figure to NORMALIZATION_STEPS simulation steps."""
    if value is None:
        return None
    return value * NORMALIZATION_STEPS / steps


# ───────────────────────────────────────────────────────────────────────
# 5.  RECORD STORES  ────────────────────────────────────────────────────
class TelemetrySample(NamedTuple):
    configuration: Optional[ConfigurationKey]
    replicate: int
    timestamp: float
    channel: str
    metric: str
    value: float
    unit: str


class _TsvStore:
    """Append-only tab-separated file; each append is a single write."""

    header: List[str] = []

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _write_rows(self, rows: List[List[str]]):
        buf = io.StringIO()
        writer = csv.writer(buf, delimiter="\t", lineterminator="\n")
        with self._lock:
            if not self.path.exists() or self.path.stat().st_size == 0:
                writer.writerow(self.header)
            writer.writerows(rows)
            with open(self.path, "a", newline="") as f:
                f.write(buf.getvalue())
                f.flush()

    def _read_rows(self) -> List[List[str]]:
        if not self.path.exists():
            return []
        with open(self.path, newline="") as f:
            rows = list(csv.reader(f, delimiter="\t"))
        if rows and rows[0] == self.header:
            rows = rows[1:]
        return [row for row in rows if row]


class TrialStore(_TsvStore):
    header = ["configuration", "replicate", "wall_time_s", "ns_per_day", "hours_per_ns"]

    def append(self, record: TrialRecord):
        self._write_rows([[
            str(record.configuration),
            str(record.replicate),
            repr(record.wall_time_s),
            repr(record.ns_per_day),
            repr(record.hours_per_ns),
        ]])

    def read(self) -> List[TrialRecord]:
        records = []
        for label, replicate, wall, ns_day, hours_ns in self._read_rows():
            records.append(TrialRecord(
                ConfigurationKey.parse(label), int(replicate),
                float(wall), float(ns_day), float(hours_ns),
            ))
        return records


class TelemetryStore(_TsvStore):
    header = ["replicate", "timestamp", "metric", "value", "unit"]

    def __init__(self, path, channel: str, configuration: Optional[ConfigurationKey] = None):
        super().__init__(path)
        self.channel = channel
        self.configuration = configuration

    def append(self, samples: Sequence[TelemetrySample]) -> int:
        if not samples:
            return 0
        self._write_rows([
            [str(s.replicate), repr(s.timestamp), s.metric, repr(s.value), s.unit]
            for s in samples
        ])
        return len(samples)

    def read(self) -> List[TelemetrySample]:
        return [
            TelemetrySample(self.configuration, int(replicate), float(timestamp),
                            self.channel, metric, float(value), unit)
            for replicate, timestamp, metric, value, unit in self._read_rows()
        ]


# ───────────────────────────────────────────────────────────────────────
# 6.  TELEMETRY  ────────────────────────────────────────────────────────
class TelemetryBase:
    """Abstract base; subclasses fill `supported` and `read()`"""

    channel: str = ""
    supported: List[str] = []

    def read(self) -> Dict[str, float]:
        raise NotImplementedError

    def schema(self) -> List[str]:
        return self.supported

    def describe(self) -> Dict[str, Any]:
        return {"channel": self.channel}

    def reset(self):
        """Forget per-trial state before a new sampler starts."""
        pass

    def shutdown(self):
        pass


# ── CPU ‑ psutil + RAPL powercap ──────────────────────────────────────
class CpuTelemetry(TelemetryBase):
    """Average core frequency and utilization from psutil; package power from RAPL.

    RAPL exposes a cumulative energy counter, so power is the energy delta
    between two consecutive reads divided by the elapsed time. The first read
    after `reset()` only primes the counter.
    """

    channel = CPU
    supported = ["frequency", "utilization", POWER_METRIC]

    def __init__(self, index: int = 0, rapl_dir=DEFAULT_RAPL_DIR):
        self.idx = index
        self.hostname = socket.gethostname().split('.', 1)[0]
        self.rapl_dir = Path(rapl_dir)
        self.max_energy_range_uj = self._read_counter(self.rapl_dir / "max_energy_range_uj")
        self._last_energy = None
        self._generation = 0
        self._lock = threading.Lock()
        self.power_available =self._read_counter(self.rapl_dir / "energy_uj") is not None
        if not self.power_available:
            logger.warning(f"CPU package power unavailable ({self.rapl_dir}/energy_uj not readable); "
                           "CPU energy will be reported as nan")
        # First call to cpu_percent(None) always returns 0.0
        psutil.cpu_percent(interval=None)

    @staticmethod
    def _read_counter(path: Path) -> Optional[int]:
        try:
            with open(path) as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    def _package_power(self, generation: int) -> Optional[float]:
        energy_uj = self._read_counter(self.rapl_dir / "energy_uj")
        now = time.monotonic()
        if energy_uj is None:
            return None
        with self._lock:
            # A read that straddles reset() belongs to the previous trial
            if generation != self._generation:
                return None
            previous, self._last_energy = self._last_energy, (energy_uj, now)
        if previous is None:
            return None
        delta_uj = energy_uj - previous[0]
        if delta_uj < 0:
            # counter wrapped around
            if not self.max_energy_range_uj:
                return None
            delta_uj += self.max_energy_range_uj
        elapsed = now - previous[1]
        if elapsed <= 0:
            return None
        return delta_uj / 1e6 / elapsed

    def read(self) -> Dict[str, float]:
        generation = self._generation
        d = {}
        try:
            freq = psutil.cpu_freq()
            if freq is not None and freq.current:
                d["frequency"] = float(freq.current)
            d["utilization"] = float(psutil.cpu_percent(interval=None))
        except (OSError, psutil.Error) as e:
            raise TelemetryGap(f"CPU telemetry read failed: {e}") from e
        power = self._package_power(generation)
        if power is not None:
            d[POWER_METRIC] = power
        return d

    def describe(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "hostname": self.hostname,
            "logical_cpus": psutil.cpu_count(logical=True),
            "power_source": str(self.rapl_dir) if self.power_available else "N/A",
        }

    def reset(self):
        with self._lock:
            self._generation += 1
            self._last_energy = None


# ── NVIDIA ‑ NVML ─────────────────────────────────────────────────────
class NVMLTelemetry(TelemetryBase):
    channel = GPU
    supported = ["frequency", "utilization", POWER_METRIC]

    def __init__(self, index: int = 0):
        try:
            import pynvml as nv
        except ImportError as e:
            raise ConfigError("The pynvml package (nvidia-ml-py) is missing; "
                              "install it or disable GPU telemetry with --no-gpu") from e
        try:
            nv.nvmlInit()
            self.h = nv.nvmlDeviceGetHandleByIndex(index)
            model = nv.nvmlDeviceGetName(self.h)
        except nv.NVMLError as e:
            raise ConfigError(f"Could not initialize NVIDIA telemetry for GPU {index}: {e}") from e
        self.nv = nv
        self.idx = index
        self.hostname = socket.gethostname().split('.', 1)[0]
        self._model = model.decode() if isinstance(model, bytes) else model

    def read(self) -> Dict[str, float]:
        nv, h = self.nv, self.h
        try:
            return {
                "frequency": float(nv.nvmlDeviceGetClockInfo(h, nv.NVML_CLOCK_GRAPHICS)),
                "utilization": float(nv.nvmlDeviceGetUtilizationRates(h).gpu),
                POWER_METRIC: nv.nvmlDeviceGetPowerUsage(h) / 1e3,
            }
        except nv.NVMLError as e:
            raise TelemetryGap(f"GPU {self.idx} telemetry read failed: {e}") from e

    def describe(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "vendor": "NVIDIA",
            "model": self._model,
            "device_id": self.idx,
            "hostname": self.hostname,
        }

    def shutdown(self):
        try:
            self.nv.nvmlShutdown()
        except self.nv.NVMLError as e:
            logger.debug(f"NVML shutdown failed: {e}")


# ── Factory ───────────────────────────────────────────────────────────
def make_telemetry(channel: str, index: int = 0, rapl_dir=DEFAULT_RAPL_DIR) -> TelemetryBase:
    if channel == CPU:
        return CpuTelemetry(index, rapl_dir=rapl_dir)
    if channel == GPU:
        return NVMLTelemetry(index)
    raise ValueError(f"Unknown telemetry channel {channel!r}; expected one of {CHANNELS}")


# ── Background sampler ────────────────────────────────────────────────
class TelemetrySampler:
    """Background thread that polls one telemetry channel for the length of one trial.

    The replicate is bound at `start()`; `stop()` signals the thread, waits at
    most `grace_s` for it to exit and closes the store to this sampler, so no
    sample lands after `stop()` returns. One sampler serves exactly one trial.
    """

    def __init__(self, telemetry: TelemetryBase, channel: str, store: TelemetryStore, period_s: float,
                 grace_s: float = SAMPLER_STOP_GRACE_S):
        self.telemetry = telemetry
        self.channel = channel
        self.store = store
        self.period_s = period_s
        self.grace_s = grace_s

        self.replicate = None
        self.thread = None
        self.samples_written = 0
        self.polls = 0
        self.gaps = 0

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._accepting = False

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self, replicate: int) -> "TelemetrySampler":
        if self.thread is not None:
            raise RuntimeError("TelemetrySampler already used; create one per trial")
        self.replicate = replicate
        self.telemetry.reset()
        self._accepting = True
        self.thread = threading.Thread(
            target=self._poll_loop, name=f"mdgauge-{self.channel}-r{replicate}", daemon=True
        )
        self.thread.start()
        return self

    def stop(self):
        self._stop_event.set()
        if self.thread is not None:
            self.thread.join(timeout=self.grace_s)
            if self.thread.is_alive():
                logger.warning(f"{self.channel} sampler did not exit within {self.grace_s}s; "
                               "discarding its remaining samples")
                self.telemetry.reset()
        with self._lock:
            self._accepting = False

    def poll_once(self) -> int:
        """Take one reading and append it; returns the number of samples written."""
        self.polls += 1
        timestamp = time.time()
        try:
            reading = self.telemetry.read()
        except TelemetryGap as e:
            self.gaps += 1
            logger.debug(f"Telemetry gap on {self.channel} (replicate {self.replicate}): {e}")
            return 0
        if not reading:
            self.gaps += 1
            return 0

        batch = [
            TelemetrySample(self.store.configuration, self.replicate, timestamp, self.channel,
                            metric, float(value), METRIC_UNITS.get(metric, ""))
            for metric, value in reading.items() if value is not None
        ]
        with self._lock:
            if not self._accepting:
                return 0
            written = self.store.append(batch)
            self.samples_written += written
        return written

    def _poll_loop(self):
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except OSError as e:
                logger.error(f"Writing {self.channel} telemetry to {self.store.path} failed: {e}")
                return
            if self._stop_event.wait(self.period_s):
                return


# ───────────────────────────────────────────────────────────────────────
# 7.  SIMULATION ENGINE  ────────────────────────────────────────────────
class EngineResult(NamedTuple):
    log_text: str
    exit_code: Optional[int]
    duration_s: float = 0.0


def _gromacs_env() -> Dict[str, str]:
    # No backups of md.* / mdrun.log between replicates
    return dict(os.environ, GMX_MAXBACKUP="-1")


def _tail(path: Path, lines: int = 5) -> str:
    try:
        return "\n".join(path.read_text(errors="replace").strip().splitlines()[-lines:])
    except OSError:
        return ""


class GromacsEngine:
    """Runs one production `gmx mdrun` per trial inside the configuration's directory."""

    LOG_NAME = "mdrun.log"

    def __init__(self, tpr_path, workdir, gmx: str = "gmx", custom_params: str = "",
                 timeout_s: Optional[float] = None):
        self.tpr_path = Path(tpr_path).resolve()
        self.workdir = Path(workdir)
        self.gmx = gmx
        self.custom_params = custom_params or ""
        self.timeout_s = timeout_s

    def configuration_dir(self, configuration: ConfigurationKey) -> Path:
        path = self.workdir / str(configuration)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def command(self, configuration: ConfigurationKey) -> List[str]:
        cmd = [
            self.gmx, "-quiet", "mdrun",
            "-s", str(self.tpr_path),
            "-deffnm", "md",
            "-g", self.LOG_NAME,
            "-dlb", "yes",
            "-tunepme",
            "-dd", "0", "0", "0",
            "-ntmpi", "1",
            "-pin", "on",
        ]
        if not configuration.is_automatic:
            cmd += ["-ntomp_pme", "0"] + configuration.mdrun_flags()
        cmd += shlex.split(self.custom_params)
        return cmd

    def run(self, configuration: ConfigurationKey, replicate: int) -> EngineResult:
        cwd = self.configuration_dir(configuration)
        log_path = cwd / self.LOG_NAME
        # a log left by the previous replicate must never be parsed for this one
        if log_path.exists():
            log_path.unlink()

        cmd = self.command(configuration)
        logger.debug(f"Running: {shlex.join(cmd)}")
        started = time.perf_counter()
        with open(cwd / "stdout.out", "w") as out, open(cwd / "stderr.out", "w") as err:
            try:
                proc = subprocess.Popen(cmd, cwd=cwd, stdout=out, stderr=err, env=_gromacs_env())
            except FileNotFoundError as e:
                raise EngineFailure(f"GROMACS executable '{self.gmx}' not found",
                                    configuration, replicate) from e
            try:
                exit_code = proc.wait(timeout=self.timeout_s)
            except subprocess.TimeoutExpired as e:
                raise EngineFailure(f"mdrun did not finish within {self.timeout_s}s",
                                    configuration, replicate) from e
            finally:
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
        duration = time.perf_counter() - started

        log_text = log_path.read_text(errors="replace") if log_path.exists() else ""
        if exit_code != 0:
            detail = _tail(cwd / "stderr.out")
            if detail:
                logger.error(f"mdrun stderr ({configuration}, replicate {replicate}):\n{detail}")
        return EngineResult(log_text, exit_code, duration)


def replace_nsteps(mdp_path, steps: int) -> int:
    """Rewrite `nsteps = N` in an .mdp file (appending it if absent)."""
    path = Path(mdp_path)
    text = path.read_text()
    new_text, count = re.subn(r"(?m)^(\s*nsteps\s*=\s*)-?\d+", rf"\g<1>{steps}", text)
    if count == 0:
        new_text = text.rstrip("\n") + f"\nnsteps = {steps}\n"
    path.write_text(new_text)
    return count


class SystemPreparer:
    """Builds the production run input (md.tpr) from a PDB file.

    Recipe: strip to ATOM records, pdb2gmx, box, solvate, neutralize with
    ions, energy minimization, NVT and NPT equilibration, production grompp.
    The .mdp files are looked up next to the protein or in its `mdp/`
    subdirectory and copied before `nsteps` is rewritten. Each stage keeps
    its own numbered .out/.err files; the equilibration traces (.xvg) are
    extracted with `gmx energy` and a failure there only logs a warning.
    """

    MDP_NAMES = ("ions", "minim", "nvt", "npt", "md")
    # (energy file, term, output) in pipeline order
    ENERGY_TRACES = {
        "em": [("em.edr", "Potential", "em_potential.xvg")],
        "nvt": [("nvt.edr", "Temperature", "nvt_temperature.xvg")],
        "npt": [("npt.edr", "Pressure", "npt_pressure.xvg"),
                ("npt.edr", "Density", "npt_density.xvg")],
    }

    def __init__(self, protein, workdir, steps: int, gmx: str = "gmx",
                 force_field: str = "amber99sb-ildn", water_model: str = "tip3p", log=None):
        self.protein = Path(protein).resolve()
        self.protein_dir = self.protein.parent
        self.prep_dir = Path(workdir) / PREPARATION_DIR_NAME
        self.steps = steps
        self.gmx = gmx
        self.force_field = force_field
        self.water_model = water_model
        self.log = log or logger
        self._stages_run = 0

    def find_mdp(self, name: str) -> Path:
        candidates = [self.protein_dir / f"{name}.mdp", self.protein_dir / "mdp" / f"{name}.mdp"]
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        raise ConfigError(
            f"A file '{name}.mdp' was not found. Copy it next to the protein or into an 'mdp' "
            f"directory beside it: {candidates[0]} or {candidates[1]}"
        )

    def stage_mdp(self, name: str, set_steps: bool = False) -> str:
        target = self.prep_dir / f"{name}.mdp"
        shutil.copyfile(self.find_mdp(name), target)
        if set_steps:
            replace_nsteps(target, self.steps)
        return target.name

    def extract_atoms(self) -> str:
        target = self.prep_dir / "clean_protein.pdb"
        with open(self.protein) as src, open(target, "w") as dst:
            for line in src:
                if line.startswith("ATOM"):
                    dst.write(line)
        return target.name

    def stage_output(self, args: List[str]):
        """Per-stage stdout/stderr paths, e.g. ``03-solvate.out`` / ``03-solvate.err``."""
        self._stages_run += 1
        stem = f"{self._stages_run:02d}-{args[0]}"
        return self.prep_dir / f"{stem}.out", self.prep_dir / f"{stem}.err"

    def run_stage(self, stage: str, args: List[str], stdin: Optional[str] = None):
        self.log.info(stage)
        cmd = [self.gmx, "-quiet"] + args
        out_path, err_path = self.stage_output(args)
        with open(out_path, "w") as out, open(err_path, "w") as err:
            try:
                proc = subprocess.run(cmd, cwd=self.prep_dir, input=stdin, text=True,
                                      stdout=out, stderr=err, env=_gromacs_env())
            except FileNotFoundError as e:
                raise EngineFailure(f"GROMACS executable '{self.gmx}' not found", stage=stage) from e
        if proc.returncode != 0:
            detail = _tail(err_path)
            raise EngineFailure(
                f"GROMACS stage '{stage}' exited with status {proc.returncode}"
                + (f":\n{detail}" if detail else ""),
                exit_code=proc.returncode, stage=stage,
            )

    def extract_traces(self, phase: str) -> List[Path]:
        """Write the xvg traces for one equilibration phase; returns those produced."""
        written = []
        for edr, term, output in self.ENERGY_TRACES[phase]:
            try:
                self.run_stage(f"Extracting {term.lower()} from {edr}",
                               ["energy", "-f", edr, "-o", output], stdin=f"{term}\n0\n")
            except EngineFailure as e:
                self.log.warning(f"Could not extract {output}: {e}")
                continue
            written.append(self.prep_dir / output)
        return written

    def prepare(self) -> Path:
        if not self.protein.is_file():
            raise ConfigError(f"Protein file {self.protein} not found")
        self.prep_dir.mkdir(parents=True, exist_ok=True)

        # Resolve every .mdp up front so a missing file fails before hours of work
        for name in self.MDP_NAMES:
            self.find_mdp(name)

        pdb = self.extract_atoms()
        self.run_stage("Creating coordinates and topology files",
                       ["pdb2gmx", "-f", pdb, "-o", "protein.gro", "-ignh",
                        "-ff", self.force_field, "-water", self.water_model])
        self.run_stage("Creating simulation box",
                       ["editconf", "-f", "protein.gro", "-o", "protein_box.gro",
                        "-c", "-d", "1.0", "-bt", "dodecahedron"])
        self.run_stage("Solvating the system",
                       ["solvate", "-cp", "protein_box.gro", "-cs", "spc216.gro",
                        "-o", "protein_solv.gro", "-p", "topol.top"])
        self.run_stage("Pre-processing ion placement",
                       ["grompp", "-f", self.stage_mdp("ions"), "-c", "protein_solv.gro",
                        "-p", "topol.top", "-o", "ions.tpr"])
        self.run_stage("Adding ions to neutralize the system",
                       ["genion", "-s", "ions.tpr", "-o", "protein_ions.gro", "-p", "topol.top",
                        "-pname", "NA", "-nname", "CL", "-neutral", "-conc", "0.15"],
                       stdin="SOL\n")
        self.run_stage("Pre-processing energy minimization",
                       ["grompp", "-f", self.stage_mdp("minim"), "-c", "protein_ions.gro",
                        "-p", "topol.top", "-o", "em.tpr"])
        self.run_stage("Minimizing energy of the system", ["mdrun", "-deffnm", "em"])
        self.extract_traces("em")
        self.run_stage("Pre-processing NVT equilibration",
                       ["grompp", "-f", self.stage_mdp("nvt", set_steps=True), "-c", "em.gro",
                        "-r", "em.gro", "-p", "topol.top", "-o", "nvt.tpr"])
        self.run_stage("Running NVT equilibration", ["mdrun", "-deffnm", "nvt"])
        self.extract_traces("nvt")
        self.run_stage("Pre-processing NPT equilibration",
                       ["grompp", "-f", self.stage_mdp("npt", set_steps=True), "-c", "nvt.gro",
                        "-r", "nvt.gro", "-t", "nvt.cpt", "-p", "topol.top", "-o", "npt.tpr"])
        self.run_stage("Running NPT equilibration", ["mdrun", "-deffnm", "npt"])
        self.extract_traces("npt")
        self.run_stage("Pre-processing production runs",
                       ["grompp", "-f", self.stage_mdp("md", set_steps=True), "-c", "npt.gro",
                        "-t", "npt.cpt", "-p", "topol.top", "-o", "md.tpr"])
        return self.prep_dir / "md.tpr"


# ───────────────────────────────────────────────────────────────────────
# 8.  TRIAL ORCHESTRATOR  ───────────────────────────────────────────────
class RunSpec(NamedTuple):
    protein_name: str
    steps: int
    replicates: int
    benchmark: str = BENCHMARK_TIME_ENERGY
    custom_params: str = ""
    use_gpu: bool = True
    energy_method: str = "mean_power"
    cpu_period_s: float = CPU_SAMPLE_PERIOD_S
    gpu_period_s: float = GPU_SAMPLE_PERIOD_S
    protein_path: Optional[Path] = None
    tpr_path: Optional[Path] = None
    engine_timeout_s: Optional[float] = None
    gpu_index: int = 0

    @property
    def measure_energy(self) -> bool:
        return self.benchmark == BENCHMARK_TIME_ENERGY

    @property
    def channels(self):
        return CHANNELS if self.use_gpu else (CPU,)


class TrialState(enum.Enum):
    IDLE = "idle"
    SAMPLERS_STARTED = "samplers_started"
    ENGINE_RUNNING = "engine_running"
    SAMPLERS_STOPPED = "samplers_stopped"
    PARSED = "parsed"
    DONE = "done"


class ConfigurationRun:
    """Trial records and record stores of one configuration within one run."""

    def __init__(self, configuration: ConfigurationKey, directory, channels):
        self.configuration = configuration
        self.directory = Path(directory)
        self.trial_store = TrialStore(self.directory / TRIAL_STORE_NAME)
        self.telemetry_stores = {
            ch: TelemetryStore(self.directory / TELEMETRY_STORE_NAMES[ch], ch, configuration)
            for ch in channels
        }
        self.trials: List[TrialRecord] = []
        self.gaps = {ch: 0 for ch in channels}

    def telemetry(self) -> Dict[str, List[TelemetrySample]]:
        return {ch: store.read() for ch, store in self.telemetry_stores.items()}


class TrialOrchestrator:
    """Drives every trial of a configuration strictly one after another.

    Only the telemetry samplers run concurrently with the (blocking) engine.
    """

    def __init__(self, engine, spec: RunSpec, workdir, telemetry_sources: Optional[Dict[str, TelemetryBase]] = None,
                 log=None):
        self.engine = engine
        self.spec = spec
        self.workdir = Path(workdir)
        self.telemetry_sources = telemetry_sources or {}
        self.log = log or logger
        self.state = TrialState.IDLE
        if spec.measure_energy:
            missing = [ch for ch in spec.channels if ch not in self.telemetry_sources]
            if missing:
                raise ConfigError(f"Energy benchmark requested but no telemetry source for: {', '.join(missing)}")

    def _period(self, channel: str) -> float:
        return self.spec.cpu_period_s if channel == CPU else self.spec.gpu_period_s

    def run_trial(self, run: ConfigurationRun, replicate: int) -> TrialRecord:
        configuration = run.configuration
        self.state = TrialState.IDLE
        samplers = []
        try:
            if self.spec.measure_energy:
                for channel in self.spec.channels:
                    sampler = TelemetrySampler(self.telemetry_sources[channel], channel,
                                               run.telemetry_stores[channel], self._period(channel))
                    samplers.append(sampler.start(replicate))
            self.state = TrialState.SAMPLERS_STARTED

            self.state = TrialState.ENGINE_RUNNING
            result = self.engine.run(configuration, replicate)
        finally:
            for sampler in samplers:
                sampler.stop()
                run.gaps[sampler.channel] += sampler.gaps
            self.state = TrialState.SAMPLERS_STOPPED

        for sampler in samplers:
            self.log.debug(f"[{configuration}] replicate {replicate}: {sampler.samples_written} "
                           f"{sampler.channel} samples, {sampler.gaps} gaps")

        if result.exit_code != 0:
            raise EngineFailure(f"mdrun exited with status {result.exit_code}",
                                configuration, replicate, result.exit_code)

        record = parse_mdrun_log(result.log_text, configuration, replicate)
        self.state = TrialState.PARSED

        run.trial_store.append(record)
        run.trials.append(record)
        self.state = TrialState.DONE
        return record

    def run_configuration(self, configuration: ConfigurationKey) -> ConfigurationRun:
        directory = self.workdir / str(configuration)
        directory.mkdir(parents=True, exist_ok=True)
        run = ConfigurationRun(configuration, directory,
                               self.spec.channels if self.spec.measure_energy else ())
        for replicate in range(1, self.spec.replicates + 1):
            self.log.info(f"[{configuration}] replicate {replicate}/{self.spec.replicates}")
            record = self.run_trial(run, replicate)
            self.log.info(f"[{configuration}] replicate {replicate}: wall {record.wall_time_s:.3f} s, "
                          f"{record.ns_per_day:.3f} ns/day")
        return run


# ───────────────────────────────────────────────────────────────────────
# 9.  AGGREGATION  ──────────────────────────────────────────────────────
class ConfigurationStats(NamedTuple):
    configuration: ConfigurationKey
    replicates: int
    wall_time_mean: float
    wall_time_sd: float
    ns_day_mean: float
    ns_day_sd: float
    hours_ns_mean: float
    hours_ns_sd: float
    cpu_energy_J_mean: Optional[float] = None
    cpu_energy_J_sd: Optional[float] = None
    gpu_energy_J_mean: Optional[float] = None
    gpu_energy_J_sd: Optional[float] = None
    total_energy_J_mean: Optional[float] = None
    total_energy_J_sd: Optional[float] = None

    @property
    def has_energy(self) -> bool:
        return self.total_energy_J_mean is not None


def aggregate_configuration(configuration: ConfigurationKey, trials: Sequence[TrialRecord],
                            telemetry: Optional[Dict[str, Sequence[TelemetrySample]]] = None,
                            measure_energy: bool = False, energy_method: str = "mean_power",
                            channels=CHANNELS) -> ConfigurationStats:
    """Reduce one configuration's trials (and telemetry) to mean/SD statistics.

    A channel that was not sampled (GPU telemetry disabled) contributes 0 J.
    """
    if not trials:
        raise ValueError(f"No trial records for configuration '{configuration}'")
    trials = sorted(trials, key=lambda t: t.replicate)
    telemetry = telemetry or {}

    wall_mean, wall_sd = summarize([t.wall_time_s for t in trials])
    ns_mean, ns_sd = summarize([t.ns_per_day for t in trials])
    hns_mean, hns_sd = summarize([t.hours_per_ns for t in trials])
    stats = dict(
        configuration=configuration,
        replicates=len(trials),
        wall_time_mean=wall_mean, wall_time_sd=wall_sd,
        ns_day_mean=ns_mean, ns_day_sd=ns_sd,
        hours_ns_mean=hns_mean, hours_ns_sd=hns_sd,
    )

    if measure_energy:
        per_channel = {}
        for channel in CHANNELS:
            if channel in channels:
                per_channel[channel] = channel_energies(telemetry.get(channel, []), trials, energy_method)
            else:
                per_channel[channel] = [0.0] * len(trials)
        totals = [c + g for c, g in zip(per_channel[CPU], per_channel[GPU])]
        stats["cpu_energy_J_mean"], stats["cpu_energy_J_sd"] = summarize(per_channel[CPU])
        stats["gpu_energy_J_mean"], stats["gpu_energy_J_sd"] = summarize(per_channel[GPU])
        stats["total_energy_J_mean"], stats["total_energy_J_sd"] = summarize(totals)

    return ConfigurationStats(**stats)


def _fmt(value: Optional[float], digits: int) -> str:
    if value is None:
        return "N/A"
    return f"{value:.{digits}f}"


def analyzed_results_rows(stats: ConfigurationStats, steps: int) -> List[List[str]]:
    rows = [
        ["Avg. wall time (s)", _fmt(stats.wall_time_mean, 3)],
        ["Avg. wall time (s) per 10k steps", _fmt(per_steps(stats.wall_time_mean, steps), 2)],
        ["SD wall time (s)", _fmt(stats.wall_time_sd, 3)],
        ["Avg. performance (ns/day)", _fmt(stats.ns_day_mean, 3)],
        ["SD performance (ns/day)", _fmt(stats.ns_day_sd, 3)],
        ["Avg. performance (h/ns)", _fmt(stats.hours_ns_mean, 3)],
        ["SD performance (h/ns)", _fmt(stats.hours_ns_sd, 3)],
    ]
    if stats.has_energy:
        rows += [
            ["Avg. CPU energy (J)", _fmt(stats.cpu_energy_J_mean, 2)],
            ["SD CPU energy (J)", _fmt(stats.cpu_energy_J_sd, 2)],
            ["Avg. GPU energy (J)", _fmt(stats.gpu_energy_J_mean, 2)],
            ["SD GPU energy (J)", _fmt(stats.gpu_energy_J_sd, 2)],
            ["Avg. total energy (J)", _fmt(stats.total_energy_J_mean, 2)],
            ["SD total energy (J)", _fmt(stats.total_energy_J_sd, 2)],
            ["Avg. total energy (J) per 10k steps", _fmt(per_steps(stats.total_energy_J_mean, steps), 1)],
        ]
    return rows


def write_analyzed_results(stats: ConfigurationStats, steps: int, path) -> Path:
    path = Path(path)
    with open(path, "w", newline="") as f:
        csv.writer(f, delimiter="\t", lineterminator="\n").writerows(analyzed_results_rows(stats, steps))
    return path


# ───────────────────────────────────────────────────────────────────────
# 10. RANKING & REPORT  ─────────────────────────────────────────────────
class RankingEntry(NamedTuple):
    configuration: ConfigurationKey
    rank: int
    stats: ConfigurationStats


def rank_configurations(stats: Sequence[ConfigurationStats], key: str = "wall_time_mean") -> List[RankingEntry]:
    """Ascending by `key`; ties keep enumeration order, missing/nan values go last."""
    def sort_key(s):
        value = getattr(s, key)
        missing = value is None or math.isnan(value)
        return (missing, 0.0 if missing else value)

    ordered = sorted(stats, key=sort_key)
    return [RankingEntry(s.configuration, rank, s) for rank, s in enumerate(ordered, start=1)]


class RunResult(NamedTuple):
    stats: List[ConfigurationStats]
    by_speed: List[RankingEntry]
    by_energy: Optional[List[RankingEntry]]


def _pm(mean_value: Optional[float], sd_value: Optional[float], digits: int) -> str:
    return f"{_fmt(mean_value, digits)} (±{_fmt(sd_value, digits)})"


def render_report(spec: RunSpec, result: RunResult, started_at: Optional[datetime] = None,
                  location: Optional[str] = None) -> str:
    started_at = started_at or datetime.now().astimezone()
    lines = [
        f"{'*' * 26} {APP_NAME} {'*' * 26}",
        "",
        f"PROTEIN: {spec.protein_name}",
        f"PATH:    {location or ''}",
        f"TIME:    {started_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()}",
        "",
        "SIMULATION PARAMETERS:",
        f"Benchmark:                       {BENCHMARK_MODES.get(spec.benchmark, spec.benchmark)}",
        f"Steps simulated (per replicate): {spec.steps}",
        f"Replicates:                      {spec.replicates}",
        f"GPU telemetry:                   {'enabled' if spec.use_gpu else 'disabled'}",
        f"Custom GROMACS parameters:       {spec.custom_params}",
        "",
        "RANKED RESULTS - TIME PERFORMANCE",
        f"{'':<4}{'CPU-GPU task load balance':<54}{'Avg. wall time (±SD) (s)':<27}"
        f"{'Wall time per 10k steps (s)':<29}{'Avg. performance (±SD) (ns/day)':<34}"
        f"{'Avg. performance (±SD) (h/ns)'}",
    ]
    for entry in result.by_speed:
        s = entry.stats
        lines.append(
            f"{entry.rank:02d}) {str(entry.configuration):<54}{_pm(s.wall_time_mean, s.wall_time_sd, 3):<27}"
            f"{_fmt(per_steps(s.wall_time_mean, spec.steps), 2):<29}{_pm(s.ns_day_mean, s.ns_day_sd, 3):<34}"
            f"{_pm(s.hours_ns_mean, s.hours_ns_sd, 3)}"
        )
    lines.append("")

    if result.by_energy is not None:
        lines += [
            "RANKED RESULTS - ENERGY CONSUMPTION",
            f"{'':<4}{'CPU-GPU task load balance':<54}{'Avg. total energy (±SD) (J)':<30}"
            f"{'Total energy per 10k steps (J)':<32}{'Avg. CPU energy (±SD) (J)':<30}"
            f"{'Avg. GPU energy (±SD) (J)'}",
        ]
        for entry in result.by_energy:
            s = entry.stats
            lines.append(
                f"{entry.rank:02d}) {str(entry.configuration):<54}"
                f"{_pm(s.total_energy_J_mean, s.total_energy_J_sd, 2):<30}"
                f"{_fmt(per_steps(s.total_energy_J_mean, spec.steps), 1):<32}"
                f"{_pm(s.cpu_energy_J_mean, s.cpu_energy_J_sd, 2):<30}"
                f"{_pm(s.gpu_energy_J_mean, s.gpu_energy_J_sd, 2)}"
            )
        lines.append("")

    lines += [
        "NOTES:",
        "  All the results showed above were calculated across the replicates selected by the user.",
        "  SD: standard deviation of the sample (nan with a single replicate).",
        "  Avg. wall time: Average of wall time that the production run took, given the number of steps set by the user.",
        "  Wall time per 10k steps: Estimated wall time of production run, per each 10,000 simulation steps.",
        "  Avg. performance (ns/day): Average performance of production run, expressed as nanoseconds of simulation per wall time days.",
        "  Avg. performance (h/ns): Average performance of production run, expressed as wall time hours per nanoseconds of simulation.",
    ]
    if result.by_energy is not None:
        lines += [
            "  Avg. total energy: Average of total (CPU+GPU) energy consumption of the production run, given the number of steps set by the user.",
            "  Total energy per 10k steps: Estimated total (CPU+GPU) energy consumption of the production run, per each 10,000 simulation steps.",
        ]
        if not spec.use_gpu:
            lines.append("  GPU telemetry was disabled; GPU energy is reported as 0.")
    lines.append("")
    return "\n".join(lines)


def write_report(text: str, directory, protein_name: str, stamp: str) -> Path:
    path = Path(directory) / f"{APP_NAME}-Final_results-{protein_name}-{stamp}.txt"
    path.write_text(text)
    return path


def _json_safe(value):
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, ConfigurationKey):
        return str(value)
    return value


def _stats_to_dict(stats: ConfigurationStats) -> Dict[str, Any]:
    return {k: _json_safe(v) for k, v in stats._asdict().items()}


def export_json_results(output_path, spec: RunSpec, result: RunResult, log, telemetry_info=None) -> Optional[Path]:
    """Export statistics and rankings to JSON (filename made unique per node)."""
    hostname = socket.gethostname().split('.', 1)[0]
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    path_obj = Path(output_path)
    output_path = path_obj.parent / f"{path_obj.stem}_{hostname}_{timestamp}{path_obj.suffix}"

    export_data = {
        "metadata": {
            "timestamp": datetime.now().isoformat(),
            "hostname": hostname,
            "app": APP_NAME,
            "telemetry": telemetry_info or {},
        },
        "run_spec": {
            "protein": spec.protein_name,
            "benchmark": spec.benchmark,
            "steps": spec.steps,
            "replicates": spec.replicates,
            "custom_params": spec.custom_params,
            "use_gpu": spec.use_gpu,
            "energy_method": spec.energy_method,
        },
        "configurations": [_stats_to_dict(s) for s in result.stats],
        "ranking_time": [str(e.configuration) for e in result.by_speed],
        "ranking_energy": [str(e.configuration) for e in result.by_energy] if result.by_energy is not None else None,
    }
    try:
        with open(output_path, "w") as f:
            json.dump(export_data, f, indent=2, default=str)
    except OSError as e:
        log.error(f"Failed to export JSON: {e}")
        return None
    log.info(f"JSON results exported to: {output_path}")
    return output_path


class BenchmarkRunner:
    """Wires generator, orchestrator, aggregation and ranking for one run."""

    def __init__(self, spec: RunSpec, engine, workdir, telemetry_sources=None, log=None,
                 configurations: Optional[Sequence[ConfigurationKey]] = None):
        self.spec = spec
        self.workdir = Path(workdir)
        self.log = log or logger
        self.configurations = list(configurations) if configurations is not None else list(enumerate_configurations())
        self.orchestrator = TrialOrchestrator(engine, spec, workdir, telemetry_sources, self.log)

    def run(self) -> RunResult:
        all_stats = []
        total = len(self.configurations)
        for i, configuration in enumerate(self.configurations, start=1):
            self.log.info(f"Configuration {i}/{total}: {configuration}")
            run = self.orchestrator.run_configuration(configuration)
            telemetry = run.telemetry() if self.spec.measure_energy else {}
            for channel, gaps in run.gaps.items():
                if gaps:
                    self.log.info(f"[{configuration}] {channel} telemetry: {gaps} skipped polls")
            stats = aggregate_configuration(configuration, run.trials, telemetry,
                                            measure_energy=self.spec.measure_energy,
                                            energy_method=self.spec.energy_method,
                                            channels=self.spec.channels)
            write_analyzed_results(stats, self.spec.steps, run.directory / ANALYZED_RESULTS_NAME)
            all_stats.append(stats)

        by_speed = rank_configurations(all_stats, "wall_time_mean")
        by_energy = rank_configurations(all_stats, "total_energy_J_mean") if self.spec.measure_energy else None
        return RunResult(all_stats, by_speed, by_energy)


# ───────────────────────────────────────────────────────────────────────
# 11. CLI, CONFIG & LOGGING  ────────────────────────────────────────────
CONFIG_SECTIONS = ("run", "telemetry", "logging")


def load_config(config_path) -> Dict[str, Any]:
    """Load YAML configuration file."""
    if not YAML_AVAILABLE:
        raise ConfigError("PyYAML is not installed. Install with: pip install pyyaml")
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML config: {e}") from e
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping at the top level")
    return config


def _cli_dests(parser: argparse.ArgumentParser, argv: Sequence[str]) -> set:
    """Destinations of the options that were given explicitly on the command line.

    argv is parsed again with every default suppressed, so only options
    argparse actually consumed (``-r5``, ``--rep 5``, ``--replicates=5``)
    end up in the namespace.
    """
    explicit = copy.deepcopy(parser)
    for action in explicit._actions:
        action.default = argparse.SUPPRESS
    ns, _ = explicit.parse_known_args(list(argv))
    return set(vars(ns))


def apply_config_to_args(args, config: Dict[str, Any], parser: argparse.ArgumentParser,
                         argv: Optional[Sequence[str]] = None):
    """Apply configuration file settings to args namespace. CLI args take precedence."""
    if not config:
        return args
    argv = sys.argv[1:] if argv is None else argv
    cli_args_set = _cli_dests(parser, argv)

    for section in CONFIG_SECTIONS:
        settings = config.get(section, {}) or {}
        if not isinstance(settings, dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")
        for key, value in settings.items():
            arg_name = key.replace('-', '_')
            if not hasattr(args, arg_name):
                logger.warning(f"Ignoring unknown config key '{section}.{key}'")
                continue
            if arg_name in cli_args_set:
                continue
            setattr(args, arg_name, value)

    unknown = set(config) - set(CONFIG_SECTIONS)
    if unknown:
        logger.warning(f"Ignoring unknown config sections: {', '.join(sorted(unknown))}")
    return args


def build_parser():
    p = argparse.ArgumentParser("MDGAUGE", formatter_class=argparse.ArgumentDefaultsHelpFormatter,
                                description="Benchmark time performance and energy consumption of GROMACS "
                                            "mdrun across every CPU-GPU task placement.")
    p.add_argument("--config", type=str, help="Path to YAML configuration file")
    p.add_argument("--dry-run", action="store_true", help="Show the configurations to benchmark and exit")
    # run
    p.add_argument("-p", "--protein", type=str, help="Protein to simulate (PDB format)")
    p.add_argument("--tpr", type=str, help="Prepared production run input (md.tpr); skips system preparation")
    p.add_argument("-b", "--benchmark", default=BENCHMARK_TIME_ENERGY, choices=sorted(BENCHMARK_MODES),
                   help="time_energy: time performance and energy consumption; time: time performance only")
    p.add_argument("-s", "--steps", type=int, help="Number of time steps to simulate in each replicate")
    p.add_argument("-r", "--replicates", type=int, help="Number of replicates per configuration")
    p.add_argument("-c", "--custom-params", type=str, default="",
                   help="Custom parameters passed verbatim to GROMACS' mdrun")
    p.add_argument("--output-dir", type=str, help="Where the working directory and final report go (default: next to the protein)")
    p.add_argument("--gmx", type=str, default="gmx", help="GROMACS wrapper executable")
    p.add_argument("--force-field", type=str, default="amber99sb-ildn", help="Force field passed to pdb2gmx")
    p.add_argument("--water-model", type=str, default="tip3p", help="Water model passed to pdb2gmx")
    p.add_argument("--engine-timeout", type=float, default=None, help="Abort a replicate whose mdrun runs longer than this (seconds)")
    # telemetry
    p.add_argument("--no-gpu", action="store_false", dest="use_gpu", help="Do not sample GPU telemetry (GPU energy counts as 0)")
    p.add_argument("--gpu-index", type=int, default=0, help="NVML index of the GPU to sample")
    p.add_argument("--cpu-sample-interval-ms", type=float, default=CPU_SAMPLE_PERIOD_S * 1000, help="CPU telemetry polling interval")
    p.add_argument("--gpu-sample-interval-ms", type=float, default=GPU_SAMPLE_PERIOD_S * 1000, help="GPU telemetry polling interval")
    p.add_argument("--rapl-path", type=str, default=DEFAULT_RAPL_DIR, help="RAPL powercap zone for CPU package power")
    p.add_argument("--energy-method", default="mean_power", choices=ENERGY_METHODS,
                   help="mean_power: wall time x mean power; integral: trapezoidal integral of the power series")
    # output & logging
    p.add_argument("--json-output", type=str, help="Path to output JSON file with statistics and rankings")
    p.add_argument("--no-log", action="store_true")
    p.add_argument("--log-file", type=str)
    p.add_argument("--verbose", action="store_true")
    p.add_argument("--quiet", action="store_true", help="No console output (log file only, if given)")
    return p


def init_logging(a):
    """Set up logging. Returns logger."""
    if a.no_log:
        logging.disable(logging.CRITICAL)
        return logging.getLogger("nul")
    logging.disable(logging.NOTSET)

    level = logging.DEBUG if a.verbose else logging.INFO
    handlers = [] if a.quiet else [logging.StreamHandler(sys.stdout)]
    if a.log_file:
        handlers.append(logging.FileHandler(a.log_file))
    if not handlers:
        handlers.append(logging.NullHandler())

    log = logging.getLogger("mdgauge")
    # Clear existing handlers so repeated runs in one process don't duplicate output
    for handler in log.handlers[:]:
        log.removeHandler(handler)

    log.setLevel(level)
    for handler in handlers:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(message)s", datefmt="%Y-%m-%dT%H:%M:%S"))
        log.addHandler(handler)
    log.propagate = False
    return log


def _positive_float(name: str, value) -> float:
    """Config files can carry any YAML type; accept only positive numbers."""
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a positive number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a positive number, got {value!r}") from e
    if not number > 0 or math.isinf(number):
        raise ConfigError(f"{name} must be a positive number, got {value!r}")
    return number


def build_run_spec(args, log=None) -> RunSpec:
    """Validate parsed arguments into a RunSpec; raises ConfigError."""
    log = log or logger
    if args.benchmark not in BENCHMARK_MODES:
        raise ConfigError(f"Invalid benchmark to run: {args.benchmark} (expected 'time_energy' or 'time')")
    if args.energy_method not in ENERGY_METHODS:
        raise ConfigError(f"Invalid energy method: {args.energy_method} (expected one of {ENERGY_METHODS})")

    if args.steps is None:
        raise ConfigError("No number of steps to run was given (use -s/--steps)")
    try:
        steps = int(args.steps)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid number of steps: {args.steps}") from e
    if steps <= 0:
        raise ConfigError("Number of steps to run must be greater than 0")
    if steps < 1000:
        log.warning("Number of steps potentially too small; short runs might cause errors during the simulations")

    if args.replicates is None:
        raise ConfigError("No number of replicates was given (use -r/--replicates)")
    try:
        replicates = int(args.replicates)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid number of replicates: {args.replicates}") from e
    if replicates < 1:
        raise ConfigError("Number of replicates must be at least 1")
    if replicates < 3:
        log.warning("Number of replicates potentially too small; results might be inaccurate and unreliable")

    cpu_period_s = _positive_float("cpu_sample_interval_ms", args.cpu_sample_interval_ms) / 1000.0
    gpu_period_s = _positive_float("gpu_sample_interval_ms", args.gpu_sample_interval_ms) / 1000.0
    engine_timeout_s = None
    if args.engine_timeout is not None:
        engine_timeout_s = _positive_float("engine_timeout", args.engine_timeout)

    if not isinstance(args.use_gpu, bool):
        raise ConfigError(f"use_gpu must be true or false, got {args.use_gpu!r}")
    if isinstance(args.gpu_index, bool) or not isinstance(args.gpu_index, int) or args.gpu_index < 0:
        raise ConfigError(f"gpu_index must be a non-negative integer, got {args.gpu_index!r}")
    custom_params = args.custom_params if args.custom_params is not None else ""
    if not isinstance(custom_params, str):
        raise ConfigError(f"custom_params must be a string, got {custom_params!r}")

    protein_path = Path(args.protein).resolve() if args.protein else None
    tpr_path = Path(args.tpr).resolve() if args.tpr else None
    if tpr_path is not None:
        if not tpr_path.is_file():
            raise ConfigError(f"Run input file {tpr_path} not found")
    elif protein_path is None:
        raise ConfigError("No protein file was given (use -p/--protein, or --tpr with a prepared run input)")
    elif not protein_path.is_file():
        raise ConfigError(f"Protein file {protein_path} not found")
    protein_name = protein_path.stem if protein_path else tpr_path.parent.name

    return RunSpec(
        protein_name=protein_name,
        steps=steps,
        replicates=replicates,
        benchmark=args.benchmark,
        custom_params=custom_params,
        use_gpu=args.use_gpu,
        energy_method=args.energy_method,
        cpu_period_s=cpu_period_s,
        gpu_period_s=gpu_period_s,
        protein_path=protein_path,
        tpr_path=tpr_path,
        engine_timeout_s=engine_timeout_s,
        gpu_index=args.gpu_index,
    )


def set_process_title(protein_name: str):
    """Name the process for ps/top when setproctitle is installed."""
    if SETPROCTITLE_AVAILABLE:
        hostname = socket.gethostname().split('.', 1)[0]
        setproctitle.setproctitle(f"mdgauge-{protein_name}@{hostname}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    argv = sys.argv[1:] if argv is None else list(argv)
    args = parser.parse_args(argv)
    log = init_logging(args)

    try:
        if args.config:
            args = apply_config_to_args(args, load_config(args.config), parser, argv)
            log = init_logging(args)
        spec = build_run_spec(args, log)
    except ConfigError as e:
        log.error(str(e))
        return 1

    configurations = list(enumerate_configurations())
    if args.dry_run:
        log.info(f"{len(configurations)} configurations x {spec.replicates} replicates, "
                 f"{spec.steps} steps, benchmark '{spec.benchmark}'")
        for i, configuration in enumerate(configurations, start=1):
            flags = " ".join(configuration.mdrun_flags()) or "(automatic CPU-GPU balancing)"
            log.info(f"{i:02d}) {configuration}  {flags}")
        return 0

    source = spec.protein_path or spec.tpr_path
    output_dir = Path(args.output_dir).resolve() if args.output_dir else source.parent
    started_at = datetime.now().astimezone()
    stamp = started_at.strftime("%Y%m%d_%H%M%S")
    workdir = output_dir / f"{spec.protein_name}-simulation-{stamp}"
    workdir.mkdir(parents=True, exist_ok=True)
    log.info(f"Working directory: {workdir}")
    set_process_title(spec.protein_name)

    telemetry_sources: Dict[str, TelemetryBase] = {}
    try:
        if spec.tpr_path is not None:
            tpr = spec.tpr_path
        else:
            preparer = SystemPreparer(spec.protein_path, workdir, spec.steps, gmx=args.gmx,
                                      force_field=args.force_field, water_model=args.water_model, log=log)
            tpr = preparer.prepare()

        if spec.measure_energy:
            for channel in spec.channels:
                telemetry_sources[channel] = make_telemetry(channel, index=spec.gpu_index if channel == GPU else 0,
                                                            rapl_dir=args.rapl_path)
                log.info(f"Telemetry {channel}: {telemetry_sources[channel].describe()}")

        engine = GromacsEngine(tpr, workdir, gmx=args.gmx, custom_params=spec.custom_params,
                               timeout_s=spec.engine_timeout_s)
        runner = BenchmarkRunner(spec, engine, workdir, telemetry_sources, log, configurations)
        result = runner.run()
    except MDGaugeError as e:
        log.error(f"Benchmark aborted: {e}")
        log.error(f"Results of completed configurations remain in {workdir}")
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted by user")
        return 130
    finally:
        for telemetry in telemetry_sources.values():
            telemetry.shutdown()

    report = render_report(spec, result, started_at, location=str(output_dir))
    report_path = write_report(report, output_dir, spec.protein_name, stamp)
    log.info(f"Final results written to {report_path}")
    best = result.by_speed[0]
    log.info(f"Fastest: {best.configuration} ({best.stats.wall_time_mean:.3f} s)")
    if result.by_energy is not None:
        greenest = result.by_energy[0]
        log.info(f"Lowest energy: {greenest.configuration} ({_fmt(greenest.stats.total_energy_J_mean, 2)} J)")

    if args.json_output:
        export_json_results(args.json_output, spec, result, log,
                            {ch: t.describe() for ch, t in telemetry_sources.items()})
    log.info("[OK] Benchmark run finished")
    return 0


if __name__ == "__main__":
    sys.exit(main())
