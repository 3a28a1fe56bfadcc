# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
# SPDX-License-Identifier: Apache-2.0
"""
Tests for the trial orchestrator and the end-to-end benchmark runner,
driven by a fake simulation engine.
"""
import threading

import pytest


def _sampler_threads():
    return [t for t in threading.enumerate() if t.name.startswith("mdgauge-")]


class TestTrialOrchestrator:
    """Tests for TrialOrchestrator."""

    def test_trials_in_replicate_order(self, mg, tmp_path, fake_engine, run_spec):
        engine = fake_engine()
        orch = mg.TrialOrchestrator(engine, run_spec(replicates=3), tmp_path)
        key = mg.ConfigurationKey("gpu", "cpu", "cpu", "cpu", "cpu")

        run = orch.run_configuration(key)

        assert engine.calls == [(str(key), 1), (str(key), 2), (str(key), 3)]
        assert [t.replicate for t in run.trials] == [1, 2, 3]
        assert run.trial_store.read() == run.trials
        assert run.directory == tmp_path / str(key)
        assert orch.state is mg.TrialState.DONE

    def test_time_only_starts_no_samplers(self, mg, tmp_path, fake_engine, run_spec):
        orch = mg.TrialOrchestrator(fake_engine(), run_spec(), tmp_path)
        run = orch.run_configuration(mg.ConfigurationKey.automatic())
        assert run.telemetry_stores == {}
        assert not (run.directory / "benchmark_cpu.tsv").exists()

    def test_energy_samplers_per_channel(self, mg, tmp_path, fake_engine, fake_telemetry, run_spec):
        spec = run_spec(benchmark=mg.BENCHMARK_TIME_ENERGY)
        sources = {"cpu": fake_telemetry("cpu", 50.0), "gpu": fake_telemetry("gpu", 100.0)}
        orch = mg.TrialOrchestrator(fake_engine(sleep_s=0.05), spec, tmp_path, sources)

        run = orch.run_configuration(mg.ConfigurationKey.automatic())

        telemetry = run.telemetry()
        for channel in ("cpu", "gpu"):
            samples = telemetry[channel]
            assert {s.replicate for s in samples} == {1, 2}
            assert {s.channel for s in samples} == {channel}
        assert sources["cpu"].resets == 2
        assert not _sampler_threads()

    def test_gpu_disabled_samples_cpu_only(self, mg, tmp_path, fake_engine, fake_telemetry, run_spec):
        spec = run_spec(benchmark=mg.BENCHMARK_TIME_ENERGY, use_gpu=False)
        orch = mg.TrialOrchestrator(fake_engine(sleep_s=0.02), spec, tmp_path, {"cpu": fake_telemetry("cpu")})
        run = orch.run_configuration(mg.ConfigurationKey.automatic())
        assert set(run.telemetry_stores) == {"cpu"}
        assert (run.directory / "benchmark_cpu.tsv").exists()
        assert not (run.directory / "benchmark_gpu.tsv").exists()

    def test_missing_telemetry_source(self, mg, tmp_path, fake_engine, fake_telemetry, run_spec):
        spec = run_spec(benchmark=mg.BENCHMARK_TIME_ENERGY)
        with pytest.raises(mg.ConfigError):
            mg.TrialOrchestrator(fake_engine(), spec, tmp_path, {"cpu": fake_telemetry("cpu")})

    def test_nonzero_exit_is_engine_failure(self, mg, tmp_path, fake_engine, fake_telemetry, run_spec):
        key = mg.ConfigurationKey.automatic()
        engine = fake_engine(sleep_s=0.02, exit_codes={(str(key), 2): 139})
        spec = run_spec(benchmark=mg.BENCHMARK_TIME_ENERGY, replicates=3)
        sources = {"cpu": fake_telemetry("cpu"), "gpu": fake_telemetry("gpu")}
        orch = mg.TrialOrchestrator(engine, spec, tmp_path, sources)

        with pytest.raises(mg.EngineFailure) as excinfo:
            orch.run_configuration(key)

        assert excinfo.value.configuration == key
        assert excinfo.value.replicate == 2
        assert excinfo.value.exit_code == 139
        assert orch.state is mg.TrialState.SAMPLERS_STOPPED
        assert engine.calls == [(str(key), 1), (str(key), 2)]
        assert not _sampler_threads()

    def test_samplers_stopped_when_engine_raises(self, mg, tmp_path, fake_engine, fake_telemetry, run_spec):
        engine = fake_engine(sleep_s=0.02, raises=KeyboardInterrupt())
        spec = run_spec(benchmark=mg.BENCHMARK_TIME_ENERGY)
        sources = {"cpu": fake_telemetry("cpu"), "gpu": fake_telemetry("gpu")}
        orch = mg.TrialOrchestrator(engine, spec, tmp_path, sources)

        with pytest.raises(KeyboardInterrupt):
            orch.run_configuration(mg.ConfigurationKey.automatic())

        assert orch.state is mg.TrialState.SAMPLERS_STOPPED
        assert not _sampler_threads()

    def test_parse_error_not_recorded(self, mg, tmp_path, fake_engine, run_spec):
        key = mg.ConfigurationKey.automatic()
        engine = fake_engine(broken_logs=[(str(key), 2)])
        orch = mg.TrialOrchestrator(engine, run_spec(), tmp_path)

        with pytest.raises(mg.ParseError):
            orch.run_configuration(key)

        rows = mg.TrialStore(tmp_path / str(key) / mg.TRIAL_STORE_NAME).read()
        assert [r.replicate for r in rows] == [1]


class TestBenchmarkRunner:
    """End-to-end runs over the full configuration space."""

    def test_time_benchmark_all_configurations(self, mg, tmp_path, fake_engine, run_spec):
        engine = fake_engine()
        result = mg.BenchmarkRunner(run_spec(), engine, tmp_path).run()

        assert len(result.stats) == 14
        assert len(engine.calls) == 28
        assert engine.calls[0] == ("nb=auto pme=auto pmefft=auto bonded=auto update=auto", 1)
        assert result.by_energy is None
        assert [e.rank for e in result.by_speed] == list(range(1, 15))
        for stats in result.stats:
            assert (tmp_path / str(stats.configuration) / "analyzed_results.tsv").exists()
            assert stats.wall_time_mean == pytest.approx(11.5)
            assert not stats.has_energy

    def test_ranking_by_wall_time(self, mg, tmp_path, fake_engine, run_spec):
        configs = list(mg.enumerate_configurations())[:3]
        walls = {str(configs[0]): 30.0, str(configs[1]): 10.0, str(configs[2]): 20.0}
        runner = mg.BenchmarkRunner(run_spec(), fake_engine(wall_times=walls), tmp_path, configurations=configs)
        result = runner.run()
        assert [e.configuration for e in result.by_speed] == [configs[1], configs[2], configs[0]]

    def test_energy_benchmark(self, mg, tmp_path, fake_engine, fake_telemetry, run_spec):
        configs = list(mg.enumerate_configurations())[:2]
        spec = run_spec(benchmark=mg.BENCHMARK_TIME_ENERGY)
        sources = {"cpu": fake_telemetry("cpu", 50.0), "gpu": fake_telemetry("gpu", 100.0)}
        runner = mg.BenchmarkRunner(spec, fake_engine(sleep_s=0.03), tmp_path, sources, configurations=configs)

        result = runner.run()

        for stats in result.stats:
            # replicates report 11 s and 12 s of wall time
            assert stats.cpu_energy_J_mean == pytest.approx(11.5 * 50.0)
            assert stats.gpu_energy_J_mean == pytest.approx(11.5 * 100.0)
            assert stats.total_energy_J_mean == pytest.approx(11.5 * 150.0)
            assert stats.total_energy_J_sd == pytest.approx(150.0 * 0.7071067811865476)
        assert result.by_energy is not None
        assert len(result.by_energy) == 2

    def test_energy_with_gpu_disabled(self, mg, tmp_path, fake_engine, fake_telemetry, run_spec):
        spec = run_spec(benchmark=mg.BENCHMARK_TIME_ENERGY, use_gpu=False)
        configs = [mg.ConfigurationKey.automatic()]
        runner = mg.BenchmarkRunner(spec, fake_engine(sleep_s=0.03), tmp_path,
                                    {"cpu": fake_telemetry("cpu", 40.0)}, configurations=configs)
        stats = runner.run().stats[0]
        assert stats.gpu_energy_J_mean == 0.0
        assert stats.total_energy_J_mean == pytest.approx(stats.cpu_energy_J_mean)

    def test_parse_error_aborts_run(self, mg, tmp_path, fake_engine, run_spec):
        configs = list(mg.enumerate_configurations())
        broken = str(configs[2])
        engine = fake_engine(broken_logs=[(broken, 1)])
        runner = mg.BenchmarkRunner(run_spec(), engine, tmp_path)

        with pytest.raises(mg.ParseError):
            runner.run()

        assert (tmp_path / str(configs[0]) / "analyzed_results.tsv").exists()
        assert (tmp_path / str(configs[1]) / "analyzed_results.tsv").exists()
        assert not (tmp_path / broken / "analyzed_results.tsv").exists()
        assert not (tmp_path / str(configs[3])).exists()
