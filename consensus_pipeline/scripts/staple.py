#!/usr/bin/env python3
"""
STAPLE consensus script for multi-rater binary segmentations.

Usage:
    consensus-staple --raters expert.npz resident.npz algorithm.nii.gz --output ./consensus
    consensus-staple --raters a.npz b.npz c.npz --config staple.yaml --remove-empty
"""

import argparse
import logging
from dataclasses import replace
from pathlib import Path

from consensus_pipeline.configs.config import Config
from consensus_pipeline.errors import ConsensusError
from consensus_pipeline.evaluation.evaluator import RaterEvaluator, run_consensus
from consensus_pipeline.utils.io import load_rater_volume, save_staple_result
from consensus_pipeline.utils.volume_ops import compute_volume_stats
from consensus_pipeline.visualization.plots import plot_consensus_slice, plot_rater_performance

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Estimate a consensus segmentation with STAPLE")

    parser.add_argument(
        "--raters",
        type=Path,
        required=True,
        nargs="+",
        help="Rater mask files (.npz, .nii, .nii.gz), at least two",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML configuration file",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Output directory (default: output_root from config, else ./consensus)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        help="Override the maximum number of EM iterations",
    )
    parser.add_argument(
        "--remove-empty",
        action="store_true",
        help="Drop slices, rows and columns no rater segmented before estimation",
    )
    parser.add_argument(
        "--plot",
        action="store_true",
        help="Save rater performance and consensus plots",
    )

    return parser.parse_args(argv)


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)

    # Validate inputs
    for path in args.raters:
        if not path.exists():
            logger.error(f"Rater file not found: {path}")
            return 1

    if args.config is not None and not args.config.exists():
        logger.error(f"Config not found: {args.config}")
        return 1

    try:
        config = Config.from_yaml(args.config) if args.config else Config()
        if args.max_iterations is not None:
            config.staple = replace(config.staple, max_iterations=args.max_iterations)
        if args.remove_empty:
            config.staple.remove_empty_indices = True
        if args.plot:
            config.output.plot = True

        volumes = [load_rater_volume(path) for path in args.raters]

        logger.info("Running STAPLE...")
        aligned, result = run_consensus(volumes, config)
    except (ConsensusError, KeyError, ValueError) as e:
        logger.error(f"STAPLE failed: {e}")
        return 1

    output_dir = args.output or config.output.output_root or Path("consensus")
    output_dir.mkdir(parents=True, exist_ok=True)

    consensus_path = save_staple_result(
        output_dir / "consensus.npz",
        result,
        positions=aligned.grid.positions,
        save_weights=config.output.save_weights,
    )
    logger.info(f"Consensus saved to: {consensus_path}")

    evaluator = RaterEvaluator(aligned, result)
    scores = evaluator.rank("sensitivity")

    # Print summary
    stats = compute_volume_stats(result.true_segmentation)
    print("\n" + "=" * 50)
    print("STAPLE SUMMARY")
    print("=" * 50)
    print(f"\nRaters: {result.n_raters}")
    print(f"Master grid: {stats['shape']} (slices, rows, columns)")
    print(f"Consensus voxels: {stats['nonzero_count']} ({stats['nonzero_ratio']:.2%})")
    print(f"Iterations: {result.iterations} (converged: {result.converged})")
    print("\nRater Scores:")
    print(scores.to_string(index=False))

    evaluator.save_results(scores, output_dir / "rater_scores.csv", include_summary=False)

    if config.output.plot:
        plot_rater_performance(result, output_path=output_dir / "rater_performance.png", show=False)
        plot_consensus_slice(
            aligned, result, output_path=output_dir / "consensus_slice.png", show=False, crop_padding=5
        )
        logger.info(f"Plots saved to: {output_dir}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
