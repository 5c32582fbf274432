#!/usr/bin/env python
"""
Run the structural inference pipeline on a DXF drawing.

Usage:
    python analyze_beams.py input.dxf
    python analyze_beams.py input.dxf --report takeoff.txt --snapshot state.json

Example:
    python analyze_beams.py drawings/level2.dxf --config my_layers.json --stop-after BEAM_ATTRIBUTES
"""

import argparse
import sys
from pathlib import Path
from ezdxf import DXFStructureError

from dxfstruct.core.config import get_default_config, load_config
from dxfstruct.core.errors import SnapshotError
from dxfstruct.core.models import ProjectState
from dxfstruct.parsers.dxf_parser import parse_dxf
from dxfstruct.persistence.snapshot import export_analysis_snapshot, import_analysis_snapshot
from dxfstruct.pipeline.session import OPTIONAL_STAGES, STAGES, StructureSession


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Infer views, walls, columns and beams from a structural DXF.")
    parser.add_argument("dxf", help="Input DXF file")
    parser.add_argument("--config", help="Layer mapping / threshold JSON (default: packaged config)")
    parser.add_argument("--resume", help="Snapshot JSON to continue from instead of a fresh parse")
    parser.add_argument("--snapshot", help="Write the analysis snapshot to this JSON file")
    parser.add_argument("--report", help="Write the beam quantity report to this text file")
    parser.add_argument("--stop-after", choices=list(STAGES), help="Last stage to run")
    parser.add_argument("--from-stage", choices=list(STAGES), help="First stage to run (with --resume)")
    return parser


def main(argv=None):
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    stages = list(STAGES)
    if args.from_stage and args.stop_after and stages.index(args.from_stage) > stages.index(args.stop_after):
        parser.error(f"--from-stage {args.from_stage} comes after --stop-after {args.stop_after}")

    dxf_file = Path(args.dxf)
    if not dxf_file.exists():
        print(f"Error: Input file not found: {dxf_file}")
        sys.exit(1)

    print("=" * 60)
    print("dxfstruct - Structural Beam Inference")
    print("=" * 60)
    print(f"Input:  {dxf_file}")
    print()

    try:
        config = load_config(args.config) if args.config else get_default_config()

        print("[1/3] Parsing DXF file...")
        data = parse_dxf(str(dxf_file))
        project = ProjectState(
            name=dxf_file.stem,
            data=data,
            layer_config=config.build_layer_config(data.layers),
            active_layers=set(data.layers),
        )
        if args.resume:
            project = import_analysis_snapshot(Path(args.resume), project)
            print(f"      [OK] Resumed from {args.resume}")
        print(f"      [OK] Parsed {len(project.data.layers)} layers, {len(project.data.entities)} entities")
        roles = ", ".join(f"{r.value}={len(v)}" for r, v in project.layer_config.roles.items())
        print(f"      [OK] Layer roles: {roles or 'none'}")
        print()

        print("[2/3] Running stages...")
        session = StructureSession(project, config=config)
        if args.from_stage:
            end = stages.index(args.stop_after) + 1 if args.stop_after else len(stages)
            reports = []
            for stage in stages[stages.index(args.from_stage):end]:
                report = session.run(stage)
                reports.append(report)
                if not report.success and stage not in OPTIONAL_STAGES:
                    break
        else:
            reports = session.run_all(stop_after=args.stop_after)
        for report in reports:
            status = "[OK]" if report.success else "[--]"
            print(f"      {status} {report.stage}: {report.message}")
        print()

        print("[3/3] Writing outputs...")
        if args.snapshot:
            export_analysis_snapshot(session.project, args.snapshot)
            print(f"      [OK] Snapshot: {args.snapshot}")
        if session.report is not None:
            if args.report:
                Path(args.report).write_text(session.report.report_text, encoding="utf-8")
                print(f"      [OK] Report: {args.report}")
            else:
                print()
                print(session.report.report_text.replace("\f", ""))
        print()

        print("=" * 60)
        print("DONE" if all(r.success for r in reports) else "STOPPED")
        print("=" * 60)
        if session.report is not None:
            print(f"Total beam volume: {session.report.total_volume_m3:.3f} m3")

    except (OSError, DXFStructureError, SnapshotError) as e:
        print()
        print("=" * 60)
        print("ERROR!")
        print("=" * 60)
        print(f"Failed to process DXF file: {e}")
        print()
        print("Common issues:")
        print("  - Wrong layer names -> Check DXF layers match the config patterns")
        print("  - Snapshot rejected -> Export it again from a finished stage")
        sys.exit(1)


if __name__ == "__main__":
    main()
