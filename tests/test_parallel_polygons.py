"""
Unit tests for parallel-rail polygon synthesis.
"""

import pytest

from dxfstruct.core.geometry import entity_bounds
from dxfstruct.detection.parallel_polygons import (
    estimate_wall_thicknesses,
    find_parallel_polygons,
    merge_collinear_beams,
    parse_valid_widths,
)
from helpers import line, rect, text


def rails(gap, length=6000, layer="BEAM"):
    half = gap / 2
    return [line(0, half, length, half, layer), line(0, -half, length, -half, layer)]


class TestParseValidWidths:
    def test_label_widths(self):
        texts = [
            text("KL1 300x600", 0, 0),
            text("250x500", 0, 0),
            text("KL2(2) 2500x600", 0, 0),
            text("notes", 0, 0),
        ]
        assert parse_valid_widths(texts) == {250, 300}

    def test_only_first_line_counts(self):
        assert parse_valid_widths([text("KL1\n300x600", 0, 0)]) == set()


class TestFindParallelPolygons:
    def test_matching_width_pairs(self):
        polys = find_parallel_polygons(rails(300), valid_widths={300})

        assert len(polys) == 1
        box = entity_bounds(polys[0])
        assert box.width() == pytest.approx(6000)
        assert box.height() == pytest.approx(300)

    def test_tilted_partner_from_same_start_rejected(self):
        lines = [line(0, 0, 6000, 0, "BEAM"), line(0, 0, 6000, 600, "BEAM")]
        assert find_parallel_polygons(lines, valid_widths={300}) == []

    def test_converging_rails_rejected(self):
        lines = [line(0, 0, 6000, 0, "BEAM"), line(0, 250, 6000, 350, "BEAM")]
        assert find_parallel_polygons(lines, valid_widths={300}) == []

    def test_rectangle_has_rail_width(self):
        polys = find_parallel_polygons(rails(300), valid_widths={300})
        xs = {round(v.x) for v in polys[0].vertices}
        ys = {round(v.y) for v in polys[0].vertices}
        assert xs == {0, 6000}
        assert ys == {-150, 150}

    def test_width_outside_tolerance_rejected(self):
        assert find_parallel_polygons(rails(280), valid_widths={300}) == []

    def test_nominal_widths_when_none_given(self):
        assert len(find_parallel_polygons(rails(250), valid_widths=set())) == 1
        assert find_parallel_polygons(rails(280), valid_widths=set()) == []

    def test_widths_from_text_entities(self):
        polys = find_parallel_polygons(rails(350), text_entities=[text("KL3 350x700", 0, 0)])
        assert len(polys) == 1

    def test_obstacle_splits_member(self):
        column = rect(2800, -250, 3200, 250, "COLU")
        polys = find_parallel_polygons(rails(300), obstacles=[column], valid_widths={300})

        spans = sorted((entity_bounds(p).min_x, entity_bounds(p).max_x) for p in polys)
        assert spans == [(pytest.approx(0), pytest.approx(2800)), (pytest.approx(3200), pytest.approx(6000))]

    def test_end_snaps_to_column_face(self):
        lines = [line(40, 150, 6000, 150), line(40, -150, 6000, -150)]
        column = rect(-500, -250, 0, 250, "COLU")
        polys = find_parallel_polygons(lines, obstacles=[column], valid_widths={300}, snap_distance=100)

        assert entity_bounds(polys[0]).min_x == pytest.approx(0)

    def test_wall_mode_needs_axis(self):
        walls = rails(200, layer="WALL")
        assert find_parallel_polygons(walls, mode="WALL", valid_widths={200}) == []

        axis = [line(-500, 0, 6500, 0, "AXIS")]
        polys = find_parallel_polygons(walls, axis_lines=axis, mode="WALL", valid_widths={200})
        assert len(polys) == 1

    def test_each_line_pairs_once(self):
        lines = [line(0, 0, 6000, 0), line(0, 300, 6000, 300), line(0, 600, 6000, 600)]
        assert len(find_parallel_polygons(lines, valid_widths={300})) == 1

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            find_parallel_polygons([], mode="SLAB")


class TestMergeCollinearBeams:
    def test_small_gap_joined(self):
        merged = merge_collinear_beams([rect(0, -150, 3000, 150), rect(3002, -150, 6000, 150)], [])

        assert len(merged) == 1
        box = entity_bounds(merged[0])
        assert box.min_x == pytest.approx(0)
        assert box.max_x == pytest.approx(6000)

    def test_obstacle_in_gap_prevents_join(self):
        column = rect(2990, -250, 3010, 250)
        merged = merge_collinear_beams([rect(0, -150, 3000, 150), rect(3002, -150, 6000, 150)], [column])
        assert len(merged) == 2

    def test_offset_lanes_kept_apart(self):
        merged = merge_collinear_beams([rect(0, -150, 3000, 150), rect(3002, 850, 6000, 1150)], [])
        assert len(merged) == 2


class TestEstimateWallThicknesses:
    def test_dominant_thickness(self):
        lines = []
        for k in range(4):
            lines.append(line(0, k * 2000, 5000, k * 2000, "WALL"))
            lines.append(line(0, k * 2000 + 200, 5000, k * 2000 + 200, "WALL"))
        assert estimate_wall_thicknesses(lines) == {200}

    def test_fallback(self):
        assert estimate_wall_thicknesses([line(0, 0, 5000, 0)]) == {100, 200, 240}
