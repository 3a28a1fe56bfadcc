# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
# SPDX-License-Identifier: Apache-2.0
"""
Pytest fixtures and configuration for mdgauge tests.
"""
import sys
import time
from pathlib import Path

import pytest

# Add parent directory to path so we can import mdgauge without installing it
ROOT_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT_DIR))

import mdgauge


def make_mdrun_log(wall=10.0, ns_day=17.28, h_ns=1.389, performance=True, time_line=True):
    """Tail of a GROMACS md.log with the accounting block."""
    lines = [
        "Started mdrun on rank 0",
        "      M E G A - F L O P S   A C C O U N T I N G",
        " Computing:          Num   Num      Call    Wall time         Giga-Cycles",
    ]
    if time_line:
        lines += [
            "               Core t (s)   Wall t (s)        (%)",
            f"       Time:      {wall * 12:.3f}       {wall:.3f}     1200.0",
        ]
    if performance:
        lines += [
            "                 (ns/day)    (hour/ns)",
            f"Performance:       {ns_day:.3f}        {h_ns:.3f}",
        ]
    lines.append("Finished mdrun on rank 0")
    return "\n".join(lines) + "\n"


class FakeEngine:
    """Stands in for GromacsEngine; wall time comes from `wall_times` or the replicate."""

    def __init__(self, wall_times=None, sleep_s=0.0, exit_codes=None, broken_logs=(), raises=None):
        self.wall_times = wall_times or {}
        self.sleep_s = sleep_s
        self.exit_codes = exit_codes or {}
        self.broken_logs = set(broken_logs)
        self.raises = raises
        self.calls = []

    def run(self, configuration, replicate):
        self.calls.append((str(configuration), replicate))
        if self.sleep_s:
            time.sleep(self.sleep_s)
        if self.raises is not None:
            raise self.raises
        key = (str(configuration), replicate)
        wall = self.wall_times.get(key, self.wall_times.get(str(configuration), 10.0 + replicate))
        log_text = make_mdrun_log(wall=wall, performance=key not in self.broken_logs)
        return mdgauge.EngineResult(log_text, self.exit_codes.get(key, 0), wall)


class FakeTelemetry(mdgauge.TelemetryBase):
    """Constant-power telemetry source."""

    supported = ["frequency", "utilization", "package_power"]

    def __init__(self, channel, power=50.0):
        self.channel = channel
        self.power = power
        self.resets = 0

    def read(self):
        return {"frequency": 2000.0, "utilization": 50.0, "package_power": self.power}

    def reset(self):
        self.resets += 1


@pytest.fixture
def parser():
    """Provide a fresh argument parser for testing."""
    return mdgauge.build_parser()


@pytest.fixture
def default_args(parser):
    """Provide default parsed arguments."""
    return parser.parse_args([])


@pytest.fixture
def mg():
    """Provide the mdgauge module for testing."""
    return mdgauge


@pytest.fixture
def mdrun_log():
    """Factory for mdrun log text."""
    return make_mdrun_log


@pytest.fixture
def fake_engine():
    """Factory for fake simulation engines."""
    return FakeEngine


@pytest.fixture
def fake_telemetry():
    """Factory for constant-power telemetry sources."""
    return FakeTelemetry


@pytest.fixture
def run_spec():
    """Factory for RunSpec with fast sampling periods."""
    def _make(**overrides):
        fields = dict(protein_name="1aki", steps=20000, replicates=2,
                      benchmark=mdgauge.BENCHMARK_TIME, cpu_period_s=0.01, gpu_period_s=0.01)
        fields.update(overrides)
        return mdgauge.RunSpec(**fields)
    return _make


@pytest.fixture
def protein_file(tmp_path):
    """A tiny PDB file with ATOM and non-ATOM records."""
    path = tmp_path / "1aki.pdb"
    path.write_text(
        "HEADER    HYDROLASE\n"
        "ATOM      1  N   LYS A   1      35.365  22.342 -11.980  1.00 22.28           N\n"
        "HETATM  1001  O   HOH A 201      40.000  20.000 -10.000  1.00 30.00           O\n"
        "ATOM      2  CA  LYS A   1      35.892  21.073 -12.488  1.00 23.02           C\n"
        "END\n"
    )
    return path
