"""
Unit tests for junction resolution.
"""

import pytest

from dxfstruct.core.geometry import OBB, entity_bounds
from dxfstruct.core.models import BeamIntersectionInfo, Bounds
from dxfstruct.pipeline.beam_topology import (
    Fragment,
    TopologyResolver,
    get_code_priority,
    parse_span,
)
from helpers import rect


def fragment(idx, beam, code, span=1, width=300, height=600):
    return Fragment(f"F-{idx}", idx, OBB.from_polygon(beam), code, span, width, height)


def junction(kind, box, angle=None):
    return BeamIntersectionInfo(
        id="INTER-1", layer="BEAM_STEP2_INTER_SECTION",
        vertices=box.corners(), bounds=box, center=box.center(),
        angle=angle, junction=kind, beam_indexes=[0, 1],
    )


HEAD = rect(0, -150, 6000, 150)
CROSS_BOX = Bounds(min_x=2850, min_y=-150, max_x=3150, max_y=150)


class TestCodes:
    def test_span_count(self):
        assert parse_span(None) == 1
        assert parse_span("2") == 2
        assert parse_span("(3A)") == 3
        assert parse_span("A") == 1

    def test_priority(self):
        assert get_code_priority("WKL1") == 2
        assert get_code_priority("KL3") == 2
        assert get_code_priority("LL1") == 2
        assert get_code_priority("L2") == 1
        assert get_code_priority("B1") == 0
        assert get_code_priority(None) == 0


class TestFragment:
    def test_cut_through_middle(self):
        frag = fragment(0, HEAD, "KL1")
        pieces = frag.cut(CROSS_BOX)

        assert [p.id for p in pieces] == ["F-0-A", "F-0-B"]
        assert pieces[0].obb.half_len * 2 == pytest.approx(2850)

    def test_cut_at_end(self):
        frag = fragment(0, rect(2850, 0, 3150, 3000), "L1")
        pieces = frag.cut(Bounds(min_x=2850, min_y=0, max_x=3150, max_y=150))

        assert [p.id for p in pieces] == ["F-0-T"]
        assert entity_bounds(pieces[0].obb.entity).min_y == pytest.approx(150)

    def test_box_missing_fragment(self):
        frag = fragment(0, HEAD, "KL1")
        assert frag.cut(Bounds(min_x=7000, min_y=-150, max_x=7300, max_y=150)) == [frag]


class TestTopologyResolver:
    def test_single_span_head_cuts_stem(self):
        head = fragment(0, HEAD, "KL1")
        stem = fragment(1, rect(2850, 0, 3150, 3000), "L1")
        box = Bounds(min_x=2850, min_y=0, max_x=3150, max_y=150)
        resolver = TopologyResolver([head, stem], [junction("T", box, 0.0)])

        result = resolver.resolve()

        assert sorted(f.id for f in result) == ["F-0", "F-1-T"]
        assert resolver.unresolved() == []

    def test_cross_of_single_spans_is_an_error(self):
        resolver = TopologyResolver(
            [fragment(0, HEAD, "KL1"), fragment(1, rect(2850, -3000, 3150, 3000), "KL2")],
            [junction("C", CROSS_BOX)],
        )
        result = resolver.resolve()

        assert len(result) == 2
        assert len(resolver.span_errors) == 1

    def test_wider_beam_runs_through(self):
        resolver = TopologyResolver(
            [fragment(0, HEAD, "KL1", span=2, width=400),
             fragment(1, rect(2850, -3000, 3150, 3000), "KL2", span=2, width=250)],
            [junction("C", CROSS_BOX)],
        )
        result = resolver.resolve()

        assert sorted(f.id for f in result) == ["F-0", "F-1-A", "F-1-B"]
        assert resolver.unresolved() == []

    def test_priority_breaks_equal_sizes(self):
        resolver = TopologyResolver(
            [fragment(0, HEAD, "L1", span=2),
             fragment(1, rect(2850, -3000, 3150, 3000), "KL2", span=2)],
            [junction("C", CROSS_BOX)],
        )
        result = resolver.resolve()

        assert sorted(f.id for f in result) == ["F-0-A", "F-0-B", "F-1"]
