"""
Surface Reconstruction Runner

Runs the complete reconstruction from an oriented point cloud PLY to a
validated mesh PLY plus a JSON quality report. Designed to run in a
container with configuration via environment variables.

Environment Variables:
    INPUT_FILE          - Input point cloud PLY file, relative to DATA_DIR (required)
    OUTPUT_FILE         - Output mesh PLY file, relative to DATA_DIR (required)
    REPORT_FILE         - Quality report JSON (default: OUTPUT_FILE with .json suffix)
    DATA_DIR            - Base directory of input and output files (default: /data)

    All reconstruction settings (RECON_PRESET, OCTREE_MAX_DEPTH, POINT_WEIGHT,
    GRID_RESOLUTION, CLINICAL_GATING, ...) are read by
    ReconstructionConfig.from_env; see reconstruction_config.py.
"""

import os
import sys
import time
from datetime import datetime
from pathlib import Path

from pipeline_log import format_size, format_time, log_header
from reconstruction_config import ReconstructionConfig
from surface_reconstruction import reconstruct_file


def file_size(path):
    return format_size(Path(path).stat().st_size)


def run_reconstruction():
    """Run the reconstruction using environment variables."""
    input_file = os.environ.get('INPUT_FILE')
    output_file = os.environ.get('OUTPUT_FILE')

    if not input_file:
        print("[ERROR] INPUT_FILE environment variable is required")
        print("Example: INPUT_FILE=scan.ply")
        return None

    if not output_file:
        print("[ERROR] OUTPUT_FILE environment variable is required")
        print("Example: OUTPUT_FILE=mesh.ply")
        return None

    data_dir = Path(os.environ.get('DATA_DIR', '/data'))
    input_path = data_dir / input_file
    output_path = data_dir / output_file
    report_file = os.environ.get('REPORT_FILE')
    report_path = data_dir / report_file if report_file else output_path.with_suffix('.json')

    config = ReconstructionConfig.from_env()
    verbose = config.verbose
    pipeline_start = time.time()

    if not input_path.exists():
        print(f"[ERROR] Input file not found: {input_path}")
        return None

    if verbose:
        log_header("SURFACE RECONSTRUCTION PIPELINE")
        print(f"  Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        print()
        print("  INPUT/OUTPUT:")
        print(f"    Input file:  {input_path}")
        print(f"    Input size:  {file_size(input_path)}")
        print(f"    Output file: {output_path}")
        print(f"    Report file: {report_path}")
        print()
        print("  CONFIGURATION:")
        print(f"    UNITS_PER_CM:      {config.units_per_cm}")
        print(f"    BACKEND:           {config.backend}")
        print(f"    OCTREE_MAX_DEPTH:  {config.octree.max_depth}")
        print(f"    OCTREE_BASE_DEPTH: {config.octree.base_depth}")
        print(f"    POINT_WEIGHT:      {config.point_weight}")
        print(f"    GRID_RESOLUTION:   {config.extraction.resolution}")
        print(f"    ERROR_THRESHOLD:   {config.optimizer.error_threshold}")
        print(f"    DENSITY_BLEND:     {config.optimizer.density_blend}")
        print(f"    BATCH_SIZE:        {config.batch.batch_size}")
        print(f"    BATCH_WORKERS:     {config.batch.max_workers}")
        print(f"    REMOVE_OUTLIERS:   {config.batch.remove_outliers}")
        print(f"    CLINICAL_GATING:   {config.validation.clinical_gating}")
        if config.deadline_seconds is not None:
            print(f"    DEADLINE:          {format_time(config.deadline_seconds)}")
        print("=" * 70)
        print()

    result = reconstruct_file(str(input_path), str(output_path), config, str(report_path))
    pipeline_time = time.time() - pipeline_start

    if verbose:
        log_header("PIPELINE SUMMARY")
        print()
        if result:
            print(f"  STATUS:     SUCCESS")
            print(f"  OUTPUT:     {output_path}")
            if output_path.exists():
                print(f"  FILE SIZE:  {file_size(output_path)}")
            print(f"  TIME:       {format_time(pipeline_time)}")
        else:
            print(f"  STATUS: FAILED")
            print()
            print("  TROUBLESHOOTING:")
            print("    - Check the error messages above")
            print("    - Inspect the quality report when one was written")
            print("    - Set RECON_UNITS_PER_CM if the capture is not in centimetres")
            print("    - Use CLINICAL_GATING=false for exploratory runs")
        print()
        print("=" * 70)

    return result


if __name__ == "__main__":
    result = run_reconstruction()
    sys.exit(0 if result else 1)
