#!/usr/bin/env python3
"""
Command-line entry point for perfusion alignment and time-to-peak analysis.

Usage: perfusion-analysis --ctp-dir path/to/perfusion --cta-dir path/to/arterial
"""

import argparse
import sys
from pathlib import Path

from .config import PipelineConfig, TRANSFORM_FAMILIES, METRICS, FAILURE_POLICIES
from .dicom_scanner import build_groups, print_scan_summary
from .errors import InvalidArgument
from .io import save_group_result
from .pipeline import process_groups, print_group_report


def build_parser() -> argparse.ArgumentParser:
    defaults = PipelineConfig()
    parser = argparse.ArgumentParser(
        description='Align serial perfusion slices and render time-to-peak maps',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        '--ctp-dir',
        type=str,
        required=True,
        help='Folder with the time-resolved perfusion DICOM slices'
    )

    parser.add_argument(
        '--cta-dir',
        type=str,
        help='Folder with the arterial-phase DICOM slices (optional)'
    )

    parser.add_argument(
        '--output-dir',
        type=str,
        default='./output',
        help='Directory to save per-group results'
    )

    parser.add_argument(
        '--reference-frame',
        type=int,
        default=defaults.reference_frame_index,
        help='0-based index of the fixed frame within each time series'
    )

    parser.add_argument(
        '--iterations',
        type=int,
        default=defaults.registration_iterations,
        help='Optimizer iteration cap per registration stage'
    )

    parser.add_argument(
        '--contour-iterations',
        type=int,
        default=defaults.contour_iterations,
        help='Active contour evolution steps'
    )

    parser.add_argument(
        '--edge-threshold',
        type=float,
        default=defaults.edge_threshold,
        help='Canny sensitivity in [0, 1] for the edge-guided stage'
    )

    parser.add_argument(
        '--transform',
        type=str,
        default=defaults.transform_family,
        choices=TRANSFORM_FAMILIES,
        help='Transform family estimated by both registration stages'
    )

    parser.add_argument(
        '--metric',
        type=str,
        default=defaults.metric,
        choices=METRICS,
        help='Registration metric'
    )

    parser.add_argument(
        '--failure-policy',
        type=str,
        default=defaults.failure_policy,
        choices=FAILURE_POLICIES,
        help='skip: record failed frames and continue, abort: fail the whole group'
    )

    parser.add_argument(
        '--fallback-to-stage1',
        action='store_true',
        help='Keep the mask-guided result when the edge-guided stage fails'
    )

    parser.add_argument(
        '--require-refinement-gain',
        action='store_true',
        help='Keep the mask-guided result when edge refinement lowers the edge overlap'
    )

    parser.add_argument(
        '--unmasked-fixed-frame',
        action='store_true',
        help='Pass the fixed frame through as the full slice instead of its masked image'
    )

    parser.add_argument(
        '--recompute-fixed-edges',
        action='store_true',
        help='Recompute the fixed edge map for every frame pair'
    )

    parser.add_argument(
        '--workers',
        type=int,
        default=defaults.max_workers,
        help='Threads used for per-frame registration'
    )

    parser.add_argument(
        '--groups',
        type=int,
        help='Process only the first N slice locations'
    )

    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Only print the final report'
    )

    return parser


def main(argv=None) -> int:
    """Main analysis pipeline."""
    args = build_parser().parse_args(argv)
    verbose = not args.quiet

    if not Path(args.ctp_dir).is_dir():
        print(f"Error: perfusion folder not found: {args.ctp_dir}")
        return 1
    if args.cta_dir and not Path(args.cta_dir).is_dir():
        print(f"Error: arterial folder not found: {args.cta_dir}")
        return 1

    try:
        config = PipelineConfig(
            contour_iterations=args.contour_iterations,
            edge_threshold=args.edge_threshold,
            registration_iterations=args.iterations,
            transform_family=args.transform,
            metric=args.metric,
            reference_frame_index=args.reference_frame,
            failure_policy=args.failure_policy,
            recompute_fixed_edges=args.recompute_fixed_edges,
            fallback_to_stage1=args.fallback_to_stage1,
            require_refinement_gain=args.require_refinement_gain,
            mask_fixed_frame=not args.unmasked_fixed_frame,
            max_workers=args.workers,
        )
    except InvalidArgument as e:
        print(f"Error: {e}")
        return 1

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        groups = build_groups(args.ctp_dir, args.cta_dir, max_groups=args.groups, verbose=verbose)
        if verbose:
            print_scan_summary(groups)

        results = process_groups(groups, config, verbose=verbose)

        if verbose:
            print(f"\nSaving results to {output_dir}...")
        for result in results:
            save_group_result(result, str(output_dir), config, verbose=verbose)

    except KeyboardInterrupt:
        print("\nAnalysis interrupted by user.")
        return 1
    except (InvalidArgument, FileNotFoundError) as e:
        print(f"\nError during analysis: {e}")
        return 1

    print_group_report(results)

    if results and not any(result.ok for result in results):
        print("\nAll groups failed.")
        return 1

    print("\nAnalysis completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
