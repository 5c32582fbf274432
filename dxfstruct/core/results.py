"""
Stage result models.

Every stage returns one of these instead of touching the project. The
``project_updates`` hook names the ProjectState fields a result replaces;
``pipeline.project.apply_result`` installs entities and updates together.
"""

from typing import Any, Dict, List, Optional
from pydantic import Field

from dxfstruct.core.models import (
    BeamIntersectionInfo,
    BeamLabelInfo,
    BeamStep2GeoInfo,
    BeamStep3AttrInfo,
    BeamStep4TopologyInfo,
    ColumnInfo,
    DxfEntity,
    DxfModel,
    MergedViewData,
    ViewportRegion,
    WallInfo,
)


class StageResult(DxfModel):
    """
    Output of one stage run.

    ``result_layers`` are owned by the stage: all entities on them are
    replaced when the result is applied, even if a layer receives nothing.
    """
    stage: str
    result_layers: List[str]
    entities: List[DxfEntity] = Field(default_factory=list)
    message: str = ""
    context_layers: List[str] = Field(default_factory=list)
    layers_to_hide: List[str] = Field(default_factory=list)
    filled_layers: List[str] = Field(default_factory=list)

    def project_updates(self) -> Dict[str, Any]:
        """ProjectState fields replaced by this result."""
        return {}

    def entities_on(self, layer: str) -> List[DxfEntity]:
        return [e for e in self.entities if e.layer == layer]


class SplitResult(StageResult):
    regions: List[ViewportRegion]

    def project_updates(self) -> Dict[str, Any]:
        return {"split_regions": self.regions}


class MergeResult(StageResult):
    labels: List[BeamLabelInfo]
    merged_view_data: MergedViewData

    def project_updates(self) -> Dict[str, Any]:
        return {"beam_labels": self.labels, "merged_view_data": self.merged_view_data}


class ColumnResult(StageResult):
    infos: List[ColumnInfo]

    def project_updates(self) -> Dict[str, Any]:
        return {"columns": self.infos}


class WallResult(StageResult):
    infos: List[WallInfo]
    thicknesses: List[int] = Field(default_factory=list)

    def project_updates(self) -> Dict[str, Any]:
        return {"walls": self.infos}


class BeamRawResult(StageResult):
    valid_widths: List[int] = Field(default_factory=list)


class BeamIntersectionResult(StageResult):
    geo_infos: List[BeamStep2GeoInfo]
    inter_infos: List[BeamIntersectionInfo]

    def project_updates(self) -> Dict[str, Any]:
        return {"beam_step2_geo_infos": self.geo_infos, "beam_step2_inter_infos": self.inter_infos}


class BeamAttributeResult(StageResult):
    infos: List[BeamStep3AttrInfo]
    unmatched_labels: List[str] = Field(default_factory=list)

    def project_updates(self) -> Dict[str, Any]:
        return {"beam_step3_attr_infos": self.infos}


class BeamTopologyResult(StageResult):
    infos: List[BeamStep4TopologyInfo]
    error_count: int = 0

    def project_updates(self) -> Dict[str, Any]:
        return {"beam_step4_topology_infos": self.infos}


class BeamReportRow(DxfModel):
    id: str
    code: str
    length: int
    width: int
    height: int
    volume: float  # mm3


class BeamReportRegion(DxfModel):
    name: str
    rows: List[BeamReportRow] = Field(default_factory=list)
    volume_m3: float = 0.0


class BeamReportResult(StageResult):
    """Quantity takeoff; carries no geometry."""
    regions: List[BeamReportRegion]
    total_volume_m3: float
    pages: List[str] = Field(default_factory=list)
    report_text: Optional[str] = None
