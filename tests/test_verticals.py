"""
Unit tests for column and wall detection.
"""

import math

import pytest

from dxfstruct.core.geometry import entity_bounds
from dxfstruct.detection.verticals import (
    COLUMN_LAYER,
    WALL_LAYER,
    calculate_columns,
    calculate_walls,
    point_in_polygon,
    split_polygon_to_rectangles,
)
from dxfstruct.detection.viewports import calculate_split_regions
from dxfstruct.pipeline.project import apply_result
from helpers import line, make_project, poly, pt, rect, titled_grid


class TestColumns:
    def test_marks_closed_outlines(self, beam_project):
        project = apply_result(beam_project, calculate_split_regions(beam_project))
        result = calculate_columns(project)

        assert len(result.entities) == 2
        assert all(e.layer == COLUMN_LAYER for e in result.entities)
        assert [c.id for c in result.infos] == ["COL-1", "COL-2"]
        assert result.infos[0].width == pytest.approx(500)
        assert COLUMN_LAYER in result.filled_layers
        assert "Restricted to 1 merged regions" in result.message

    def test_columns_outside_base_views_ignored(self):
        project = make_project(titled_grid() + [
            rect(-500, -250, 0, 250, "COLU"),
            rect(90000, 0, 90500, 500, "COLU"),
        ])
        project = apply_result(project, calculate_split_regions(project))
        assert len(calculate_columns(project).infos) == 1

    def test_not_ready_without_column_layer(self):
        assert calculate_columns(make_project(titled_grid())) is None


class TestWalls:
    def _wall_project(self, extra=()):
        return make_project([
            line(0, 0, 5000, 0, "WALL"),
            line(0, 200, 5000, 200, "WALL"),
            line(-500, 100, 5500, 100, "AXIS"),
            *extra,
        ])

    def test_rails_become_rectangles(self):
        result = calculate_walls(self._wall_project())

        assert len(result.infos) == 1
        assert result.infos[0].thickness == pytest.approx(200)
        assert result.entities[0].layer == WALL_LAYER
        assert WALL_LAYER in result.filled_layers

    def test_column_cuts_wall(self):
        result = calculate_walls(self._wall_project([rect(2300, -100, 2700, 300, "COLU")]))

        spans = sorted((entity_bounds(e).min_x, entity_bounds(e).max_x) for e in result.entities)
        assert len(spans) == 2
        assert spans[0][1] == pytest.approx(2300)
        assert spans[1][0] == pytest.approx(2700)

    def test_closed_outline_split_into_rectangles(self):
        l_shape = poly([(0, 0), (3000, 0), (3000, 200), (200, 200), (200, 3000), (0, 3000)], "WALL")
        result = calculate_walls(make_project([l_shape]))
        assert len(result.entities) == 2

    def test_diagonal_wall_thickness(self):
        d = 3000 / math.sqrt(2)
        w = 200 / math.sqrt(2)
        diagonal = poly([(0, 0), (d, d), (d - w, d + w), (-w, w)], "WALL")
        result = calculate_walls(make_project([diagonal]))

        assert len(result.infos) == 1
        assert result.infos[0].thickness == pytest.approx(200)

    def test_not_ready_without_rails(self):
        assert calculate_walls(make_project([line(0, 0, 100, 0, "AXIS")])) is None


class TestRectangleDecomposition:
    def test_l_shape(self):
        l_shape = poly([(0, 0), (3000, 0), (3000, 200), (200, 200), (200, 3000), (0, 3000)])
        rects = split_polygon_to_rectangles(l_shape, WALL_LAYER)

        areas = sorted(entity_bounds(r).width() * entity_bounds(r).height() for r in rects)
        assert areas == [pytest.approx(200 * 2800), pytest.approx(3000 * 200)]

    def test_non_orthogonal_rejected(self):
        assert split_polygon_to_rectangles(poly([(0, 0), (100, 50), (0, 100)]), WALL_LAYER) == []

    def test_point_in_polygon(self):
        square = [pt(0, 0), pt(10, 0), pt(10, 10), pt(0, 10)]
        assert point_in_polygon(pt(5, 5), square)
        assert not point_in_polygon(pt(15, 5), square)
