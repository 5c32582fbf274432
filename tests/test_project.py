"""
Tests for project helpers and result installation.
"""

from dxfstruct.core.models import Bounds, ViewportInfo, ViewportRegion
from dxfstruct.core.results import StageResult
from dxfstruct.pipeline.project import (
    apply_result,
    filter_entities_in_bounds,
    find_entities_in_all_projects,
    get_merge_base_bounds,
    layer_regex,
    source_layers,
)
from helpers import line, make_project, rect


def box(x1, y1, x2, y2):
    return Bounds(min_x=x1, min_y=y1, max_x=x2, max_y=y2)


class TestApplyResult:
    def _result(self):
        return StageResult(
            stage="TEST",
            result_layers=["OUT", "OUT_DEBUG"],
            entities=[rect(0, 0, 10, 10, "OUT"), rect(20, 0, 30, 10, "OUT")],
            context_layers=["AXIS", "MISSING"],
            layers_to_hide=["BEAM"],
            filled_layers=["OUT"],
        )

    def test_replace_mode(self):
        project = make_project([line(0, 0, 10, 0, "AXIS"), line(0, 0, 0, 10, "BEAM")])

        once = apply_result(project, self._result())
        twice = apply_result(once, self._result())

        assert len(once.data.entities) == 4
        assert once.data.entities == twice.data.entities
        assert once.active_layers == twice.active_layers

    def test_layers(self):
        project = make_project([line(0, 0, 10, 0, "AXIS"), line(0, 0, 0, 10, "BEAM")])
        updated = apply_result(project, self._result())

        assert "OUT_DEBUG" in updated.data.layers
        assert updated.active_layers == {"AXIS", "OUT", "OUT_DEBUG"}
        assert updated.filled_layers == {"OUT"}
        assert source_layers(updated) == ["AXIS", "BEAM", "OUT", "OUT_DEBUG"]

    def test_input_not_modified(self):
        project = make_project([line(0, 0, 10, 0, "AXIS")])
        apply_result(project, self._result())

        assert len(project.data.entities) == 1
        assert project.filled_layers == set()

    def test_generated_layers_are_not_sources(self):
        project = make_project([line(0, 0, 10, 0, "AXIS"), rect(0, 0, 5, 5, "COLU_CALC")])
        assert source_layers(project) == ["AXIS"]


class TestBaseBounds:
    def test_unsplit(self):
        assert get_merge_base_bounds(make_project([])) is None

    def test_base_views_only(self):
        project = make_project([]).model_copy(update={"split_regions": [
            ViewportRegion(bounds=box(0, 0, 100, 100), title="PLAN"),
            ViewportRegion(bounds=box(200, 0, 300, 100), title="PLAN-1",
                           info=ViewportInfo(prefix="PLAN", index=1)),
            ViewportRegion(bounds=box(400, 0, 500, 100), title="PLAN-2",
                           info=ViewportInfo(prefix="PLAN", index=2)),
        ]})

        assert get_merge_base_bounds(project) == [box(0, 0, 100, 100), box(200, 0, 300, 100)]
        assert get_merge_base_bounds(project, 10)[0] == box(-10, -10, 110, 110)


class TestEntityQueries:
    def test_find_in_all_projects(self):
        first = make_project([rect(0, 0, 5, 5, "COLU_CALC"), line(0, 0, 1, 0, "COLU")])
        second = make_project([rect(10, 0, 15, 5, "COLU_CALC")])

        found = find_entities_in_all_projects([first, second], layer_regex("COLU_CALC"))
        assert len(found) == 2
        assert {e.layer for e in found} == {"COLU_CALC"}

    def test_filter_in_bounds(self):
        inside = line(10, 10, 20, 10)
        crossing = line(-50, 50, 150, 50)
        outside = line(500, 500, 600, 500)

        kept = filter_entities_in_bounds([inside, crossing, outside], [box(0, 0, 100, 100)])
        assert kept == [inside, crossing]
        assert filter_entities_in_bounds([outside], None) == [outside]
