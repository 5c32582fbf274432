"""
Unit tests for the beam quantity report.
"""

import pytest

from dxfstruct.core.models import BeamStep4TopologyInfo, Bounds, ViewportInfo, ViewportRegion
from dxfstruct.core.results import BeamReportRegion, BeamReportRow
from dxfstruct.pipeline.beam_report import (
    REPORT_TITLE,
    UNCATEGORIZED,
    calculate_beam_report,
    group_by_region,
    natural_key,
    region_name,
    render_report,
)
from helpers import make_project, pt, titled_grid


def instance(n, code, x, length=6000.4, width=300, height=500):
    return BeamStep4TopologyInfo(
        id=f"TOPO-{n}", layer="BEAM_STEP4_LOGIC",
        bounds=Bounds(min_x=x - 100, min_y=-150, max_x=x + 100, max_y=150), center=pt(x, 0),
        beam_index=n, parent_beam_index=0, code=code,
        width=width, height=height, length=length, volume=length * width * height,
    )


REGIONS = [
    ViewportRegion(bounds=Bounds(min_x=0, min_y=-1000, max_x=10000, max_y=1000), title="BEAM PLAN(2)",
                   info=ViewportInfo(prefix="BEAM PLAN", index=2)),
    ViewportRegion(bounds=Bounds(min_x=20000, min_y=-1000, max_x=30000, max_y=1000), title="BLOCK 2"),
]


class TestGrouping:
    def test_natural_key(self):
        assert sorted(["KL10", "KL2", "KL1"], key=natural_key) == ["KL1", "KL2", "KL10"]

    def test_region_names(self):
        assert region_name(pt(5000, 0), REGIONS) == "Region 2"
        assert region_name(pt(25000, 0), REGIONS) == "Region 2"
        assert region_name(pt(50000, 0), REGIONS) == UNCATEGORIZED
        assert region_name(None, REGIONS) == UNCATEGORIZED

    def test_rows_sorted_and_rounded(self):
        infos = [instance(1, "KL10", 1000), instance(2, "KL2", 2000), instance(3, "L1", 50000)]
        regions = group_by_region(infos, REGIONS)

        assert [r.name for r in regions] == ["Region 2", UNCATEGORIZED]
        assert [row.code for row in regions[0].rows] == ["KL2", "KL10"]
        assert regions[0].rows[0].length == 6000
        assert regions[0].rows[0].volume == pytest.approx(6000 * 300 * 500)
        assert regions[0].volume_m3 == pytest.approx(1.8)

    def test_zero_volume_skipped(self):
        regions = group_by_region([instance(1, "KL1", 1000, length=0)], REGIONS)
        assert regions == []


class TestRendering:
    def _region(self, rows):
        items = [BeamReportRow(id=str(i), code="KL1", length=6000, width=300, height=500, volume=9e8)
                 for i in range(1, rows + 1)]
        return BeamReportRegion(name="Region 1", rows=items, volume_m3=0.9 * rows)

    def test_first_page_layout(self):
        pages = render_report([self._region(1)], 0.9)
        lines = pages[0].splitlines()

        assert len(pages) == 1
        assert lines[0] == REPORT_TITLE
        assert lines[1] == "Total Project Volume: 0.900 m3"
        assert lines[3] == "Region 1 - Vol: 0.900 m3"
        assert lines[4].startswith("ID")
        assert set(lines[5]) == {"-"}
        assert "900,000,000" in lines[6]

    def test_long_region_continues(self):
        pages = render_report([self._region(3)], 2.7, rows_per_page=2)

        assert len(pages) == 2
        assert pages[1].splitlines()[0] == "Region 1 (continued)"
        assert pages[1].splitlines()[1].startswith("ID")


class TestCalculateBeamReport:
    def test_not_ready_without_topology(self):
        assert calculate_beam_report(make_project(titled_grid())) is None

    def test_totals(self):
        project = make_project(titled_grid()).model_copy(update={
            "beam_step4_topology_infos": [instance(1, "KL1", 1000), instance(2, "KL1", 2000)],
        })
        result = calculate_beam_report(project)

        assert result.total_volume_m3 == pytest.approx(1.8)
        assert result.message == "Calculation Complete. Total Volume: 1.800 m3"
        assert result.regions[0].name == UNCATEGORIZED
        assert result.result_layers == []
