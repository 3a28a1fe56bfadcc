# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
# SPDX-License-Identifier: Apache-2.0
"""
Unit tests for the configuration space generator.
"""
import itertools

import pytest


class TestConfigurationKey:
    """Tests for the ConfigurationKey value type."""

    def test_canonical_label(self, mg):
        key = mg.ConfigurationKey("gpu", "cpu", "cpu", "gpu", "cpu")
        assert str(key) == "nb=gpu pme=cpu pmefft=cpu bonded=gpu update=cpu"

    def test_parse_inverts_label(self, mg):
        key = mg.ConfigurationKey("gpu", "gpu", "cpu", "gpu", "gpu")
        assert mg.ConfigurationKey.parse(str(key)) == key

    def test_parse_automatic(self, mg):
        key = mg.ConfigurationKey.parse("nb=auto pme=auto pmefft=auto bonded=auto update=auto")
        assert key.is_automatic

    @pytest.mark.parametrize("label", [
        "nb=gpu pme=cpu",
        "nb=gpu pme=cpu pmefft=cpu bonded=cpu update=cpu update=cpu",
        "nb=gpu pme=cpu pmefft=cpu bonded=cpu upd=cpu",
        "nb gpu pme cpu pmefft cpu bonded cpu update cpu",
        "nb=tpu pme=cpu pmefft=cpu bonded=cpu update=cpu",
    ])
    def test_parse_rejects_malformed(self, mg, label):
        with pytest.raises(ValueError):
            mg.ConfigurationKey.parse(label)

    def test_invalid_placement(self, mg):
        with pytest.raises(ValueError):
            mg.ConfigurationKey("gpu", "fpga", "cpu", "cpu", "cpu")

    def test_partial_auto_rejected(self, mg):
        """'auto' is only valid on every axis at once."""
        with pytest.raises(ValueError):
            mg.ConfigurationKey("auto", "cpu", "cpu", "cpu", "cpu")

    def test_immutable(self, mg):
        key = mg.ConfigurationKey("gpu", "cpu", "cpu", "cpu", "cpu")
        with pytest.raises(AttributeError):
            key.nb = "cpu"

    def test_hashable_and_equal(self, mg):
        a = mg.ConfigurationKey("gpu", "cpu", "cpu", "cpu", "cpu")
        b = mg.ConfigurationKey.parse("nb=gpu pme=cpu pmefft=cpu bonded=cpu update=cpu")
        assert a == b
        assert len({a, b}) == 1
        assert {a: 1}[b] == 1

    def test_ordering_by_label(self, mg):
        a = mg.ConfigurationKey("cpu", "cpu", "cpu", "cpu", "cpu")
        b = mg.ConfigurationKey("gpu", "cpu", "cpu", "cpu", "cpu")
        assert a < b
        assert sorted([b, a]) == [a, b]

    def test_axis_properties(self, mg):
        key = mg.ConfigurationKey("gpu", "gpu", "cpu", "cpu", "gpu")
        assert (key.nb, key.pme, key.pmefft, key.bonded, key.update) == ("gpu", "gpu", "cpu", "cpu", "gpu")
        assert key.as_dict() == {"nb": "gpu", "pme": "gpu", "pmefft": "cpu", "bonded": "cpu", "update": "gpu"}

    def test_mdrun_flags(self, mg):
        key = mg.ConfigurationKey("gpu", "cpu", "cpu", "gpu", "cpu")
        assert key.mdrun_flags() == ["-nb", "gpu", "-pme", "cpu", "-pmefft", "cpu", "-bonded", "gpu", "-update", "cpu"]

    def test_automatic_has_no_flags(self, mg):
        assert mg.ConfigurationKey.automatic().mdrun_flags() == []


class TestAdmissibility:
    """Tests for the offload pruning rules."""

    @staticmethod
    def _rejected(nb, pme, pmefft, bonded, update):
        return (
            (update == "gpu" and pme == "cpu" and nb == "cpu")
            or (bonded == "gpu" and nb == "cpu")
            or (pmefft == "gpu" and pme == "cpu")
            or (pme == "gpu" and nb == "cpu")
        )

    def test_all_tuples_match_rules(self, mg):
        for placements in itertools.product(("cpu", "gpu"), repeat=5):
            key = mg.ConfigurationKey(*placements)
            assert mg.is_admissible(key) is (not self._rejected(*placements)), str(key)

    def test_automatic_is_admissible(self, mg):
        assert mg.is_admissible(mg.ConfigurationKey.automatic())

    def test_all_placements_covers_32(self, mg):
        keys = list(mg.all_placements())
        assert len(keys) == 32
        assert len(set(keys)) == 32

    def test_pme_on_gpu_needs_nonbonded_on_gpu(self, mg):
        assert not mg.is_admissible(mg.ConfigurationKey("cpu", "gpu", "cpu", "cpu", "cpu"))
        assert mg.is_admissible(mg.ConfigurationKey("gpu", "gpu", "cpu", "cpu", "cpu"))


class TestEnumerateConfigurations:
    """Tests for the configuration generator."""

    def test_fourteen_configurations(self, mg):
        configs = list(mg.enumerate_configurations())
        assert len(configs) == 14
        assert len(set(configs)) == 14

    def test_automatic_first(self, mg):
        configs = list(mg.enumerate_configurations())
        assert configs[0].is_automatic
        assert str(configs[0]) == "nb=auto pme=auto pmefft=auto bonded=auto update=auto"
        assert not any(c.is_automatic for c in configs[1:])

    def test_without_automatic(self, mg):
        configs = list(mg.enumerate_configurations(include_automatic=False))
        assert len(configs) == 13
        assert all(mg.is_admissible(c) for c in configs)

    def test_nesting_order(self, mg):
        labels = [str(c) for c in mg.enumerate_configurations()]
        assert labels[1] == "nb=cpu pme=cpu pmefft=cpu bonded=cpu update=cpu"
        assert labels[2] == "nb=gpu pme=cpu pmefft=cpu bonded=cpu update=cpu"
        assert labels[3] == "nb=gpu pme=cpu pmefft=cpu bonded=cpu update=gpu"
        assert labels[-1] == "nb=gpu pme=gpu pmefft=gpu bonded=gpu update=gpu"

    def test_restartable(self, mg):
        assert list(mg.enumerate_configurations()) == list(mg.enumerate_configurations())
