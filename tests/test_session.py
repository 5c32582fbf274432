"""
End-to-end tests running the stage pipeline on small synthetic drawings.
"""

import pytest

from dxfstruct.core.models import EntityType, SemanticLayer
from dxfstruct.pipeline.beam_common import (
    STEP1_LAYER,
    STEP2_LAYER,
    STEP3_LAYER,
    STEP4_ERROR_LAYER,
    STEP4_LAYER,
    collect_beam_sources,
)
from dxfstruct.pipeline.session import STAGES, StructureSession
from helpers import line, make_project, rect, single_beam_drawing, text, titled_grid


def tee_drawing():
    """Primary beam between two columns with a secondary beam framing into its middle."""
    return titled_grid() + [
        line(-1000, 3000, 7000, 3000, "AXIS"),
        line(0, 150, 6000, 150, "BEAM"),
        line(0, -150, 6000, -150, "BEAM"),
        line(2850, 150, 2850, 3000, "BEAM"),
        line(3150, 150, 3150, 3000, "BEAM"),
        rect(-500, -250, 0, 250, "COLU"),
        rect(6000, -250, 6500, 250, "COLU"),
        rect(2750, 3000, 3250, 3500, "COLU"),
        line(1500, 800, 1500, 0, "BEAM_LABEL"),
        text("KL1 300x600", 1500, 900, "BEAM_LABEL"),
        line(3600, 1500, 3000, 1500, "BEAM_LABEL"),
        text("L1 300x400", 3700, 1500, "BEAM_LABEL"),
    ]


def layer_snapshot(project):
    infos = (
        project.beam_labels, project.columns, project.walls,
        project.beam_step2_geo_infos, project.beam_step2_inter_infos,
        project.beam_step3_attr_infos, project.beam_step4_topology_infos,
    )
    return {layer: project.entities_on(layer) for layer in project.data.layers}, infos


class TestFullRun:
    def test_single_beam_quantity(self, beam_project):
        session = StructureSession(beam_project)
        reports = session.run_all()

        assert [r.stage for r in reports] == list(STAGES)
        assert [r.stage for r in reports if not r.success] == ["WALLS"]

        topo = session.project.beam_step4_topology_infos
        assert len(topo) == 1
        assert topo[0].code == "KL1"
        assert (topo[0].length, topo[0].width, topo[0].height) == (6000, 300, 500)
        assert topo[0].volume == pytest.approx(9e8)

        assert session.report.total_volume_m3 == pytest.approx(0.9)
        assert session.report.regions[0].name == "Region 1"
        assert reports[-1].message == "Calculation Complete. Total Volume: 0.900 m3"

    def test_stage_layers(self, beam_project):
        session = StructureSession(beam_project)
        session.run_all(stop_after="BEAM_INTERSECTIONS")
        project = session.project

        assert len(project.entities_on(STEP1_LAYER)) == 1
        beams = [e for e in project.entities_on(STEP2_LAYER) if e.type == EntityType.LWPOLYLINE]
        assert len(beams) == 1
        assert STEP1_LAYER not in project.active_layers
        assert project.beam_step2_inter_infos == []
        assert [i.id for i in project.beam_step2_geo_infos] == ["B2-0"]

    def test_attributes_from_leader(self, beam_project):
        session = StructureSession(beam_project)
        session.run_all(stop_after="BEAM_ATTRIBUTES")

        info = session.project.beam_step3_attr_infos[0]
        assert (info.id, info.code, info.width, info.height) == ("B2-0", "KL1", 300, 500)
        assert info.from_label
        labels = [e.text for e in session.project.entities_on(STEP3_LAYER) if e.text]
        assert labels == ["B2-0 KL1"]

    def test_label_without_leader_uses_proximity(self):
        entities = [e for e in single_beam_drawing() if not (e.layer == "BEAM_LABEL" and e.type == EntityType.LINE)]
        session = StructureSession(make_project(entities))
        session.run_all(stop_after="BEAM_ATTRIBUTES")

        assert session.project.beam_labels[0].leader_start is None
        assert session.project.beam_step3_attr_infos[0].code == "KL1"

    def test_unlabelled_beam_gets_defaults_and_marker(self):
        entities = [e for e in single_beam_drawing() if e.layer != "BEAM_LABEL"]
        session = StructureSession(make_project(entities))
        for stage in ("SPLIT", "COLUMNS", "BEAM_RAW", "BEAM_INTERSECTIONS", "BEAM_ATTRIBUTES", "BEAM_TOPOLOGY"):
            assert session.run(stage).success, stage

        attr = session.project.beam_step3_attr_infos[0]
        assert (attr.code, attr.width, attr.height, attr.raw_label) == ("UNKNOWN", 300, 600, "N/A")

        errors = session.project.entities_on(STEP4_ERROR_LAYER)
        assert [e.text for e in errors if e.text] == ["UNK"]
        topo = session.project.beam_step4_topology_infos[0]
        assert topo.code == ""
        assert any(e.text and e.text.startswith("1 ?") for e in session.project.entities_on(STEP4_LAYER))

    def test_tee_is_resolved_into_instances(self):
        session = StructureSession(make_project(tee_drawing()))
        session.run_all()

        inter = session.project.beam_step2_inter_infos
        assert [i.junction for i in inter] == ["T"]

        topo = sorted(session.project.beam_step4_topology_infos, key=lambda t: t.code)
        assert [t.code for t in topo] == ["KL1", "L1"]
        assert topo[0].length == 6000
        assert topo[1].length == 2850
        assert session.report.total_volume_m3 == pytest.approx((6000 * 300 * 600 + 2850 * 300 * 400) / 1e9)


class TestRerun:
    STAGES_AFTER_SPLIT = (
        "MERGE", "COLUMNS", "WALLS", "BEAM_RAW", "BEAM_INTERSECTIONS",
        "BEAM_ATTRIBUTES", "BEAM_TOPOLOGY", "BEAM_REPORT",
    )

    @pytest.mark.parametrize("drawing", [single_beam_drawing, tee_drawing])
    def test_rerunning_stages_changes_nothing(self, drawing):
        session = StructureSession(make_project(drawing()))
        first = session.run_all()
        before = layer_snapshot(session.project)
        total = session.report.total_volume_m3

        for stage in self.STAGES_AFTER_SPLIT:
            session.run(stage)

        assert layer_snapshot(session.project) == before
        assert [r.success for r in session.reports[len(first):]] == [r.success for r in first[1:]]
        assert session.report.total_volume_m3 == pytest.approx(total)

    def test_stage_run_twice_in_a_row(self, beam_project):
        session = StructureSession(beam_project)
        session.run_all(stop_after="BEAM_ATTRIBUTES")
        before = layer_snapshot(session.project)

        session.run("BEAM_ATTRIBUTES")
        session.run("BEAM_ATTRIBUTES")

        assert layer_snapshot(session.project) == before


class TestOptionalStages:
    def test_untitled_drawing_still_gets_beams(self):
        entities = [e for e in single_beam_drawing() if e.layer != "TITLE"]
        session = StructureSession(make_project(entities))
        reports = session.run_all()

        assert [r.stage for r in reports] == list(STAGES)
        assert [r.stage for r in reports if not r.success] == ["MERGE", "WALLS"]

        topo = session.project.beam_step4_topology_infos
        assert len(topo) == 1
        assert (topo[0].width, topo[0].height) == (300, 600)
        assert session.report.total_volume_m3 == pytest.approx(6000 * 300 * 600 / 1e9)


class TestStageFailures:
    def test_beam_stage_before_split(self, beam_project):
        report = StructureSession(beam_project).run("BEAM_RAW")

        assert not report.success
        assert report.message == 'Please run "Split Views" first'

    def test_intersections_before_raw(self, beam_project):
        session = StructureSession(beam_project)
        session.run("SPLIT")
        report = session.run("BEAM_INTERSECTIONS")

        assert not report.success
        assert "Step 1" in report.message

    def test_failure_leaves_project_untouched(self, beam_project):
        session = StructureSession(beam_project)
        session.run("BEAM_TOPOLOGY")
        assert session.project is beam_project

    def test_run_all_stops_at_required_stage(self):
        session = StructureSession(make_project([line(0, 0, 100, 0, "BEAM")]))
        reports = session.run_all()

        assert [r.stage for r in reports] == ["SPLIT"]
        assert session.report is None

    def test_unknown_stage(self, beam_project):
        with pytest.raises(ValueError):
            StructureSession(beam_project).run("SLABS")


class TestBorrowedObstacles:
    def test_columns_from_other_drawing(self, beam_project):
        session = StructureSession(beam_project)
        session.run("SPLIT")
        project = session.project.model_copy(update={
            "layer_config": session.project.layer_config.model_copy(update={
                "roles": {k: v for k, v in session.project.layer_config.roles.items() if k != SemanticLayer.COLUMN},
            }),
        })
        other = make_project([rect(-500, -250, 0, 250, "COLU_CALC")], name="columns")

        assert collect_beam_sources(project).obstacles == []
        assert len(collect_beam_sources(project, [other]).obstacles) == 1
