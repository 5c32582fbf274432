"""
dxfstruct - Structural Inference for Drawing Exchange Files

Recovers views, walls, columns and beams from 2D structural DXF drawings
and produces a beam quantity takeoff.
"""

__version__ = "0.1.0"

from dxfstruct.parsers.dxf_parser import parse_dxf
from dxfstruct.parsers.block_flattener import extract_entities
from dxfstruct.detection.parallel_polygons import find_parallel_polygons
from dxfstruct.detection.viewports import calculate_split_regions
from dxfstruct.detection.view_merge import calculate_merge_views
from dxfstruct.detection.verticals import calculate_columns, calculate_walls
from dxfstruct.pipeline.session import StructureSession
from dxfstruct.persistence.snapshot import export_analysis_snapshot, import_analysis_snapshot

__all__ = [
    "parse_dxf",
    "extract_entities",
    "find_parallel_polygons",
    "calculate_split_regions",
    "calculate_merge_views",
    "calculate_columns",
    "calculate_walls",
    "StructureSession",
    "export_analysis_snapshot",
    "import_analysis_snapshot",
]
