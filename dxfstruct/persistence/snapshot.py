"""
Analysis snapshot export/import.

A snapshot is the JSON image of a ProjectState after some stage. Importing
it restores a project from which the next stage runs exactly as it would
have in the original session.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union
from pydantic import Field, ValidationError
from loguru import logger

from dxfstruct.core.errors import SnapshotError
from dxfstruct.core.models import (
    BeamIntersectionInfo,
    BeamLabelInfo,
    BeamStep2GeoInfo,
    BeamStep3AttrInfo,
    BeamStep4TopologyInfo,
    ColumnInfo,
    DxfData,
    DxfModel,
    LayerConfig,
    MergedViewData,
    ProjectState,
    ViewportRegion,
    WallInfo,
)


MERGE_LAYERS = ("MERGE_LABEL_H", "MERGE_LABEL_V")


class AnalysisSnapshot(DxfModel):
    """Persisted analysis state (camelCase on disk)."""
    name: str
    created_at: str
    layer_config: Optional[LayerConfig] = None
    split_regions: Optional[List[ViewportRegion]] = None
    merged_view_data: Optional[MergedViewData] = None
    columns: Optional[List[ColumnInfo]] = None
    walls: Optional[List[WallInfo]] = None
    data: DxfData
    active_layers: List[str] = Field(default_factory=list)
    filled_layers: List[str] = Field(default_factory=list)
    step: str = "raw"

    beam_labels: Optional[List[BeamLabelInfo]] = None
    beam_step2_geo_infos: Optional[List[BeamStep2GeoInfo]] = None
    beam_step2_inter_infos: Optional[List[BeamIntersectionInfo]] = None
    beam_step3_attr_infos: Optional[List[BeamStep3AttrInfo]] = None
    beam_step4_topology_infos: Optional[List[BeamStep4TopologyInfo]] = None


_CARRIED_FIELDS = (
    "layer_config", "split_regions", "merged_view_data", "columns", "walls",
    "beam_labels", "beam_step2_geo_infos", "beam_step2_inter_infos",
    "beam_step3_attr_infos", "beam_step4_topology_infos",
)


def snapshot_step(project: ProjectState) -> str:
    """Furthest view-preparation step the project has reached."""
    if project.merged_view_data or any(project.has_layer(l) for l in MERGE_LAYERS):
        return "merge"
    if project.split_regions:
        return "split"
    return "raw"


def build_analysis_snapshot(project: ProjectState) -> AnalysisSnapshot:
    """
    Capture a project's analysis state.

    Args:
        project: Project to capture

    Returns:
        AnalysisSnapshot stamped with the current UTC time
    """
    return AnalysisSnapshot(
        name=project.name,
        created_at=datetime.now(timezone.utc).isoformat(),
        data=project.data,
        active_layers=sorted(project.active_layers),
        filled_layers=sorted(project.filled_layers),
        step=snapshot_step(project),
        **{field: getattr(project, field) for field in _CARRIED_FIELDS},
    )


def snapshot_to_json(project: ProjectState, indent: Optional[int] = None) -> str:
    """Serialize a project's snapshot to JSON text."""
    snapshot = build_analysis_snapshot(project)
    return snapshot.model_dump_json(by_alias=True, exclude_none=True, indent=indent)


def export_analysis_snapshot(project: ProjectState, output_path: Union[str, Path]) -> Path:
    """
    Write a project's snapshot to a JSON file.

    Args:
        project: Project to export
        output_path: Destination file

    Returns:
        Path written
    """
    path = Path(output_path)
    path.write_text(snapshot_to_json(project), encoding="utf-8")
    logger.info(f"Exported analysis snapshot ({snapshot_step(project)}) to {path}")
    return path


def _read_payload(source: Union[str, Path]) -> dict:
    if isinstance(source, Path) or not source.lstrip().startswith("{"):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"Snapshot not found: {path}")
        text = path.read_text(encoding="utf-8")
    else:
        text = source

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise SnapshotError(f"Snapshot is not valid JSON: {e}") from e

    if not isinstance(payload, dict) or not payload.get("data"):
        raise SnapshotError("Invalid analysis export file: missing drawing data")
    return payload


def import_analysis_snapshot(
    source: Union[str, Path],
    project: Optional[ProjectState] = None,
) -> ProjectState:
    """
    Restore a project from a snapshot.

    Values stored in the snapshot win; anything it lacks is taken from
    ``project`` (when given). Filled layers are always shown.

    Args:
        source: Snapshot file path or JSON text
        project: Project the snapshot is loaded into

    Returns:
        New ProjectState

    Raises:
        SnapshotError: Malformed snapshot or missing ``data``
        FileNotFoundError: Snapshot path does not exist
    """
    payload = _read_payload(source)
    payload.setdefault("name", project.name if project else "snapshot")
    payload.setdefault("createdAt", "")

    try:
        snapshot = AnalysisSnapshot.model_validate(payload)
    except ValidationError as e:
        raise SnapshotError(f"Invalid analysis snapshot: {e}") from e

    active = set(snapshot.active_layers) | set(snapshot.filled_layers)
    if not active and project is not None:
        active = set(project.active_layers)

    update = {
        field: getattr(snapshot, field) if getattr(snapshot, field) is not None
        else (getattr(project, field) if project else None)
        for field in _CARRIED_FIELDS
    }
    if update["layer_config"] is None:
        update["layer_config"] = LayerConfig()

    restored = ProjectState(
        name=snapshot.name,
        data=snapshot.data,
        active_layers=active,
        filled_layers=set(snapshot.filled_layers),
        **update,
    )
    if project is not None:
        restored = restored.model_copy(update={"guid": project.guid})

    logger.info(f"Imported analysis snapshot '{snapshot.name}' at step '{snapshot.step}'")
    return restored
