"""
Stage orchestration for one drawing.

A StructureSession owns the current ProjectState, runs stages by name and
installs their results in replace mode.
"""

from collections import OrderedDict
from typing import Callable, Dict, List, Optional
from pydantic import BaseModel
from loguru import logger

from dxfstruct.core.config import Config, get_default_config
from dxfstruct.core.errors import StageNotReady
from dxfstruct.core.models import ProjectState
from dxfstruct.core.results import BeamReportResult, StageResult
from dxfstruct.detection.verticals import calculate_columns, calculate_walls
from dxfstruct.detection.view_merge import calculate_merge_views
from dxfstruct.detection.viewports import calculate_split_regions
from dxfstruct.pipeline.beam_attributes import calculate_beam_attribute_mounting
from dxfstruct.pipeline.beam_intersections import calculate_beam_intersection_processing
from dxfstruct.pipeline.beam_raw import calculate_beam_raw_generation
from dxfstruct.pipeline.beam_report import calculate_beam_report
from dxfstruct.pipeline.beam_topology import calculate_beam_topology_merge
from dxfstruct.pipeline.project import apply_result


STAGES: "OrderedDict[str, Callable]" = OrderedDict([
    ("SPLIT", calculate_split_regions),
    ("MERGE", calculate_merge_views),
    ("COLUMNS", calculate_columns),
    ("WALLS", calculate_walls),
    ("BEAM_RAW", calculate_beam_raw_generation),
    ("BEAM_INTERSECTIONS", calculate_beam_intersection_processing),
    ("BEAM_ATTRIBUTES", calculate_beam_attribute_mounting),
    ("BEAM_TOPOLOGY", calculate_beam_topology_merge),
    ("BEAM_REPORT", calculate_beam_report),
])

BEAM_STAGES = ("BEAM_RAW", "BEAM_INTERSECTIONS", "BEAM_ATTRIBUTES", "BEAM_TOPOLOGY", "BEAM_REPORT")

# Beams fall back to raw WALL/COLUMN layers and unlabelled attributes when these did not run.
OPTIONAL_STAGES = ("MERGE", "COLUMNS", "WALLS")


class StageReport(BaseModel):
    """Outcome of one stage run."""
    stage: str
    success: bool
    message: str


class StructureSession:
    """
    Runs analysis stages against one project.

    Other loaded drawings are consulted read-only by the beam stages when
    this drawing lacks walls or columns.
    """

    def __init__(
        self,
        project: ProjectState,
        other_projects: Optional[List[ProjectState]] = None,
        config: Optional[Config] = None,
    ):
        """
        Initialize the session.

        Args:
            project: Drawing to analyse
            other_projects: Other loaded drawings
            config: Threshold source (defaults to the packaged config)
        """
        self.project = project
        self.other_projects = other_projects or []
        self.config = config or get_default_config()
        self.reports: List[StageReport] = []
        self.results: Dict[str, StageResult] = {}

    @property
    def report(self) -> Optional[BeamReportResult]:
        """Last quantity report, if step 5 ran."""
        return self.results.get("BEAM_REPORT")

    def run(self, stage: str) -> StageReport:
        """
        Run one stage and install its result.

        Args:
            stage: Stage name (see STAGES)

        Returns:
            StageReport; on failure the project is left untouched and the
            message carries the reason

        Raises:
            ValueError: Unknown stage name
        """
        if stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}. Expected one of {', '.join(STAGES)}")

        kwargs = {"config": self.config}
        if stage in BEAM_STAGES:
            kwargs["other_projects"] = self.other_projects

        calculate = STAGES[stage].__wrapped__
        try:
            result = calculate(self.project, **kwargs)
        except StageNotReady as e:
            logger.warning(f"[{stage}] cannot proceed: {e.reason}")
            report = StageReport(stage=stage, success=False, message=e.reason)
        else:
            self.project = apply_result(self.project, result)
            self.results[stage] = result
            report = StageReport(stage=stage, success=True, message=result.message)

        self.reports.append(report)
        return report

    def run_all(self, stop_after: Optional[str] = None) -> List[StageReport]:
        """
        Run the stages in order.

        View merge, column and wall detection may fail without stopping
        the run; any other stage that cannot proceed ends it.

        Args:
            stop_after: Last stage to run (default: all)

        Returns:
            Reports of the stages that ran
        """
        reports = []
        for stage in STAGES:
            report = self.run(stage)
            reports.append(report)
            if not report.success and stage not in OPTIONAL_STAGES:
                logger.warning(f"Pipeline stopped at {stage}")
                break
            if stage == stop_after:
                break
        return reports
