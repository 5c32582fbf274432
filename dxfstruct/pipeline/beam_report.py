"""
Beam step 5: quantity takeoff.

Groups the step-4 beam instances by view and renders a paginated fixed-width
report. No geometry is produced.
"""

import re
from typing import Dict, List, Optional
from loguru import logger
import numpy as np

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady, stage_guard
from dxfstruct.core.geometry import round_half_up
from dxfstruct.core.models import BeamStep4TopologyInfo, Bounds, Point2D, ProjectState, ViewportRegion
from dxfstruct.core.results import BeamReportRegion, BeamReportResult, BeamReportRow


REPORT_TITLE = "Structural Beam Quantity Survey"
UNCATEGORIZED = "Uncategorized"

_COLUMNS = (("ID", 8, "<"), ("Code", 16, "<"), ("Len (mm)", 10, ">"),
            ("W (mm)", 8, ">"), ("H (mm)", 8, ">"), ("Vol (mm3)", 16, ">"))
_DIGITS = re.compile(r"(\d+)")


def natural_key(text: str):
    """Sort key comparing digit runs numerically ("KL2" < "KL10")."""
    return [(0, int(part), "") if part.isdigit() else (1, 0, part.lower())
            for part in _DIGITS.split(text or "") if part]


def _instance_center(info: BeamStep4TopologyInfo) -> Optional[Point2D]:
    if info.center is not None:
        return info.center
    bounds = Bounds.from_points(info.vertices)
    return bounds.center() if bounds else None


def region_name(center: Optional[Point2D], regions: List[ViewportRegion]) -> str:
    """Name of the first view holding the point: its title index, else its position."""
    if center is None:
        return UNCATEGORIZED
    for i, region in enumerate(regions):
        if region.bounds.contains_point(center):
            if region.info is not None:
                return f"Region {region.info.index}"
            return f"Region {i + 1}"
    return UNCATEGORIZED


def group_by_region(infos: List[BeamStep4TopologyInfo], regions: List[ViewportRegion]) -> List[BeamReportRegion]:
    """
    Tabulate beam instances per view.

    Lengths and sizes are rounded to whole millimetres before the volume is
    recomputed; instances without volume are left out.

    Returns:
        Regions in natural name order, rows ordered by code then id
    """
    rows: Dict[str, List[BeamReportRow]] = {}
    for info in infos:
        if info.volume <= 0:
            continue
        length = round_half_up(info.length)
        width = round_half_up(info.width)
        height = round_half_up(info.height)
        rows.setdefault(region_name(_instance_center(info), regions), []).append(BeamReportRow(
            id=str(info.beam_index),
            code=info.code,
            length=length,
            width=width,
            height=height,
            volume=float(length * width * height),
        ))

    grouped = []
    for name in sorted(rows, key=natural_key):
        items = sorted(rows[name], key=lambda r: (natural_key(r.code), int(r.id)))
        volume = float(np.sum([r.volume for r in items])) / 1e9
        grouped.append(BeamReportRegion(name=name, rows=items, volume_m3=volume))
    return grouped


def _header_line() -> str:
    return " ".join(f"{title:{align}{width}}" for title, width, align in _COLUMNS).rstrip()


def _row_line(row: BeamReportRow) -> str:
    values = (row.id, row.code, str(row.length), str(row.width), str(row.height), f"{row.volume:,.0f}")
    return " ".join(
        f"{value:{align}{width}}" for value, (_, width, align) in zip(values, _COLUMNS)
    ).rstrip()


def render_report(regions: List[BeamReportRegion], total_m3: float, rows_per_page: int = 50) -> List[str]:
    """
    Render the report as pages of fixed-width text.

    The first page opens with the title and project total. Every region
    starts with "<name> - Vol: X.XXX m3" and the column header; a region
    running past ``rows_per_page`` rows continues on the next page under a
    repeated header.

    Returns:
        Page texts
    """
    header = _header_line()
    rule = "-" * len(header)
    pages: List[str] = []
    lines = [REPORT_TITLE, f"Total Project Volume: {total_m3:.3f} m3", ""]
    count = 0

    def new_page(title: str) -> None:
        nonlocal lines, count
        pages.append("\n".join(lines).rstrip())
        lines = [title, header, rule]
        count = 0

    for region in regions:
        if count and count + 2 > rows_per_page:
            new_page(f"{region.name} - Vol: {region.volume_m3:.3f} m3")
        else:
            lines.extend([f"{region.name} - Vol: {region.volume_m3:.3f} m3", header, rule])
        for row in region.rows:
            if count >= rows_per_page:
                new_page(f"{region.name} (continued)")
            lines.append(_row_line(row))
            count += 1
        lines.append("")

    pages.append("\n".join(lines).rstrip())
    return pages


@stage_guard("BEAM_REPORT")
def calculate_beam_report(
    project: ProjectState,
    other_projects: Optional[List[ProjectState]] = None,
    config: Optional[Config] = None,
) -> BeamReportResult:
    """
    Build the beam quantity report.

    Args:
        project: Project with step-4 topology infos
        other_projects: Unused; accepted so every beam stage has one signature
        config: Threshold source (defaults to the packaged config)

    Returns:
        BeamReportResult with per-region tables, totals in m3 and the
        rendered pages
    """
    config = config or get_default_config()
    logger.info(f"Beam step 5 (report) for {project.name}")

    infos = project.beam_step4_topology_infos
    if not infos:
        raise StageNotReady("BEAM_REPORT", "Missing Step 4 topology data. Please run Step 4 first")

    regions = group_by_region(infos, project.split_regions or [])
    total = float(np.sum([r.volume for region in regions for r in region.rows])) / 1e9

    rows_per_page = config.get_classification_rule("beam_report", "rows_per_page", 50)
    pages = render_report(regions, total, rows_per_page)

    count = sum(len(r.rows) for r in regions)
    logger.success(f"Report: {count} beams in {len(regions)} regions, total {total:.3f} m3")
    return BeamReportResult(
        stage="BEAM_REPORT",
        result_layers=[],
        regions=regions,
        total_volume_m3=total,
        pages=pages,
        report_text="\n\f\n".join(pages),
        message=f"Calculation Complete. Total Volume: {total:.3f} m3",
    )
