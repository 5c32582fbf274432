"""
Unit tests for view registration, label orientation and label parsing.
"""

import pytest

from dxfstruct.core.errors import StageNotReady
from dxfstruct.core.models import Bounds, LayerConfig, Point2D, SemanticLayer
from dxfstruct.detection.view_merge import (
    MERGE_LAYER_H,
    build_beam_label_infos,
    calculate_merge_vector,
    calculate_merge_views,
    classify_label_orientation,
    get_grid_intersections,
    is_beam_viewport_name,
    parse_beam_label,
)
from dxfstruct.detection.viewports import calculate_split_regions
from dxfstruct.pipeline.project import apply_result
from helpers import line, make_project, pt, text, titled_grid


def grid_points(dx=0.0, dy=0.0):
    return [pt(x + dx, y + dy) for x in (0, 6000) for y in (0, 6000)]


class TestMergeVector:
    def test_pure_translation(self):
        vector = calculate_merge_vector(grid_points(), grid_points(20000, 0))
        assert vector == Point2D(x=20000, y=0)

    def test_secondary_point_maps_back(self):
        vector = calculate_merge_vector(grid_points(), grid_points(5000, 3000))
        label = pt(5100, 3050)
        assert (label.x - vector.x, label.y - vector.y) == (100, 50)

    def test_jitter_within_quantum(self):
        target = [pt(p.x + 3, p.y - 2) for p in grid_points(20000, 0)]
        vector = calculate_merge_vector(grid_points(), target)
        assert vector.x == pytest.approx(20003)
        assert vector.y == pytest.approx(-2)

    def test_missing_points(self):
        assert calculate_merge_vector([], grid_points()) is None

    def test_grid_intersections(self):
        axis = [line(0, -100, 0, 6100), line(6000, -100, 6000, 6100), line(-100, 0, 6100, 0)]
        box = Bounds(min_x=-100, min_y=-100, max_x=6100, max_y=6100)
        assert get_grid_intersections(box, axis) == [pt(0, 0), pt(6000, 0)]


class TestLabelParsing:
    def test_tiers(self):
        rich = parse_beam_label("KL1(2) 250x500")
        assert (rich.code, rich.span, rich.width, rich.height) == ("KL1", "2", 250, 500)

        simple = parse_beam_label("KL1 300X500\n(-0.050)")
        assert (simple.code, simple.span, simple.width, simple.height) == ("KL1", None, 300, 500)

        span_only = parse_beam_label("KL3(2A)")
        assert (span_only.code, span_only.span, span_only.width) == ("KL3", "2A", None)

        bare = parse_beam_label("L3")
        assert bare.code == "L3" and not bare.has_dimensions()

    def test_star_and_times_separators(self):
        assert parse_beam_label("WKL2 250*600").height == 600
        assert parse_beam_label("LL1 200×400").width == 200

    def test_unparseable(self):
        assert parse_beam_label("梁") is None
        assert parse_beam_label("") is None

    def test_dimension_inheritance_and_review_flag(self):
        merged = {MERGE_LAYER_H: [
            text("KL1 300x600", 0, 0),
            text("KL1(2)", 0, 3000),
            text("L9", 0, 6000),
        ]}
        infos = build_beam_label_infos(merged)

        assert infos[1].parsed.width == 300
        assert infos[1].parsed.height == 600
        assert infos[1].parsed.span == "2"
        assert not infos[1].needs_review
        assert infos[2].needs_review
        assert infos[0].leader_start is None


class TestLabelOrientation:
    vertical_leaders = [(pt(0, 0), pt(0, 1000)), (pt(500, 0), pt(500, 1000))]

    def test_config_beats_name(self):
        config = LayerConfig(orientation={"LABEL_V": "H"})
        assert classify_label_orientation("LABEL_V", [], [], config) == "H"

    def test_name_beats_leaders(self):
        assert classify_label_orientation("LABEL_V", self.vertical_leaders, []) == "V"

    def test_leaders_beat_text(self):
        texts = [text("KL1", 0, 0, rotation=90)]
        assert classify_label_orientation("ANNOT", self.vertical_leaders, texts) == "H"

    def test_text_rotation_last(self):
        texts = [text("KL1", 0, 0, rotation=90), text("KL2", 0, 0, rotation=270)]
        assert classify_label_orientation("ANNOT", [], texts) == "V"

    def test_no_signal(self):
        assert classify_label_orientation("ANNOT", [], []) is None

    def test_beam_view_names(self):
        assert is_beam_viewport_name("二层梁平法施工图")
        assert is_beam_viewport_name("Beam Layout(1)")
        assert not is_beam_viewport_name("COLUMN PLAN")


class TestCalculateMergeViews:
    def _two_views(self):
        entities = titled_grid(0, "BEAM PLAN(1)") + titled_grid(20000, "BEAM PLAN(2)") + [
            line(23000, 800, 23000, 0, "BEAM_LABEL"),
            text("KL2 250x500", 23000, 900, "BEAM_LABEL"),
        ]
        project = make_project(entities)
        return apply_result(project, calculate_split_regions(project))

    def test_secondary_labels_move_onto_base(self):
        project = self._two_views()
        result = calculate_merge_views(project)

        merged_texts = [e for e in result.entities_on(MERGE_LAYER_H) if e.text]
        assert len(merged_texts) == 1
        assert merged_texts[0].start == Point2D(x=3000, y=900)

        mapping = result.merged_view_data.mappings[1]
        assert mapping.vector == Point2D(x=20000, y=0)
        assert (mapping.source_region_index, mapping.target_region_index) == (1, 0)

        label = result.labels[0]
        assert label.parsed.code == "KL2"
        assert label.leader_start == Point2D(x=3000, y=800)
        assert label.leader_end == Point2D(x=3000, y=0)

    def test_secondary_views_need_axis_layers(self):
        project = self._two_views()
        roles = {k: v for k, v in project.layer_config.roles.items() if k != SemanticLayer.AXIS}
        project = project.model_copy(update={"layer_config": LayerConfig(roles=roles)})

        with pytest.raises(StageNotReady, match="No AXIS layers configured"):
            calculate_merge_views.__wrapped__(project)
        assert calculate_merge_views(project) is None

    def test_not_ready_without_split(self):
        project = make_project(titled_grid())
        assert calculate_merge_views(project) is None

    def test_not_ready_without_beam_views(self):
        project = make_project(titled_grid(0, "COLUMN PLAN"))
        project = apply_result(project, calculate_split_regions(project))
        assert calculate_merge_views(project) is None
