"""
Unit tests for provenance records stored in snapshots.
"""

import json

import pytest
import numpy as np
import pandas as pd
import anndata as ad

from sccluster.core.analysis_ir import (
    PROVENANCE_KEY,
    AnalysisStep,
    get_provenance,
    record_step,
)
from sccluster.core.exceptions import ProvenanceError


@pytest.fixture
def empty_data():
    return ad.AnnData(
        X=np.zeros((2, 2)),
        obs=pd.DataFrame(index=["c1", "c2"]),
        var=pd.DataFrame(index=["g1", "g2"]),
    )


def _step(name, **parameters):
    return AnalysisStep(
        operation=f"test.{name}",
        tool_name=name,
        description=f"{name} step",
        library="numpy",
        parameters=parameters,
    )


class TestAnalysisStep:
    """Serialization of single steps."""

    def test_timestamp_added(self):
        assert "timestamp" in _step("a").execution_context

    def test_to_dict_is_json_serializable(self):
        step = _step("a", resolutions=np.array([0.4, 0.8]), n=np.int64(3), bad=float("nan"))

        data = step.to_dict()

        json.dumps(data)
        assert data["parameters"]["resolutions"] == [0.4, 0.8]
        assert data["parameters"]["n"] == 3
        assert data["parameters"]["bad"] == "nan"

    def test_from_dict_round_trip(self):
        step = _step("a", k=20)

        restored = AnalysisStep.from_dict(step.to_dict())

        assert restored.tool_name == "a"
        assert restored.parameters == {"k": 20}

    def test_from_dict_missing_fields(self):
        with pytest.raises(ValueError, match="operation"):
            AnalysisStep.from_dict({"tool_name": "a", "description": "", "library": ""})


class TestProvenanceLog:
    """The log stored in uns is append-only."""

    def test_empty(self, empty_data):
        assert get_provenance(empty_data) == []

    def test_record_in_order(self, empty_data):
        record_step(empty_data, _step("first"))
        record_step(empty_data, _step("second"))

        assert [s.tool_name for s in get_provenance(empty_data)] == ["first", "second"]
        assert isinstance(empty_data.uns[PROVENANCE_KEY], str)

    def test_copies_carry_history(self, empty_data):
        record_step(empty_data, _step("first"))
        derived = empty_data.copy()
        record_step(derived, _step("second"))

        assert len(get_provenance(empty_data)) == 1
        assert len(get_provenance(derived)) == 2

    def test_unreadable_log(self, empty_data):
        empty_data.uns[PROVENANCE_KEY] = "{not json"

        with pytest.raises(ProvenanceError):
            get_provenance(empty_data)
