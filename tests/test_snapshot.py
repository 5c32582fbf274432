"""
Tests for analysis snapshot export/import.
"""

import json

import pytest

from dxfstruct.core.errors import SnapshotError
from dxfstruct.persistence.snapshot import (
    export_analysis_snapshot,
    import_analysis_snapshot,
    snapshot_step,
    snapshot_to_json,
)
from dxfstruct.pipeline.beam_topology import calculate_beam_topology_merge
from dxfstruct.pipeline.session import StructureSession


@pytest.fixture
def attributed(beam_project):
    session = StructureSession(beam_project)
    session.run_all(stop_after="BEAM_ATTRIBUTES")
    return session.project


class TestSnapshotExport:
    def test_camel_case_keys(self, attributed):
        payload = json.loads(snapshot_to_json(attributed))

        assert payload["step"] == "merge"
        for key in ("splitRegions", "mergedViewData", "beamLabels", "beamStep3AttrInfos", "activeLayers"):
            assert key in payload
        assert "beamStep4TopologyInfos" not in payload
        assert payload["activeLayers"] == sorted(payload["activeLayers"])

    def test_step(self, beam_project, attributed):
        assert snapshot_step(beam_project) == "raw"
        split = StructureSession(beam_project)
        split.run("SPLIT")
        assert snapshot_step(split.project) == "split"
        assert snapshot_step(attributed) == "merge"

    def test_export_file(self, attributed, tmp_path):
        path = export_analysis_snapshot(attributed, tmp_path / "state.json")

        restored = import_analysis_snapshot(path)
        assert restored.name == attributed.name
        assert len(restored.data.entities) == len(attributed.data.entities)


class TestSnapshotImport:
    def test_next_stage_matches_original(self, attributed):
        restored = import_analysis_snapshot(snapshot_to_json(attributed))

        original = calculate_beam_topology_merge.__wrapped__(attributed)
        resumed = calculate_beam_topology_merge.__wrapped__(restored)

        assert [i.model_dump() for i in resumed.infos] == [i.model_dump() for i in original.infos]
        assert resumed.message == original.message

    def test_keeps_project_identity(self, beam_project, attributed):
        restored = import_analysis_snapshot(snapshot_to_json(attributed), beam_project)

        assert restored.guid == beam_project.guid
        assert restored.split_regions == attributed.split_regions
        assert restored.active_layers == attributed.active_layers | attributed.filled_layers

    def test_project_fills_missing_fields(self, attributed):
        payload = json.loads(snapshot_to_json(attributed))
        del payload["beamLabels"]

        restored = import_analysis_snapshot(json.dumps(payload), attributed)
        assert restored.beam_labels == attributed.beam_labels

    def test_missing_data(self):
        with pytest.raises(SnapshotError, match="missing drawing data"):
            import_analysis_snapshot('{"name": "empty"}')

    def test_invalid_json(self):
        with pytest.raises(SnapshotError):
            import_analysis_snapshot("{not json")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            import_analysis_snapshot(tmp_path / "absent.json")
