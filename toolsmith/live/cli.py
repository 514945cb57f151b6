#!/usr/bin/env python3
"""
Live Mode CLI

Run the decision-and-learning loop headless and optionally write
a final snapshot.

Usage:
    # Default config, 600 ticks
    python -m toolsmith.live.cli

    # Longer run from a config file, saving the end state
    python -m toolsmith.live.cli --ticks 5000 --config my.yaml --snapshot out.json

    # Watch the loop without online training
    python -m toolsmith.live.cli --no-train --log-level DEBUG
"""

import argparse
import dataclasses
import logging
from collections import Counter

from toolsmith.live.config import load_config
from toolsmith.live.engine import LiveModeEngine
from toolsmith.live.persistence import save_snapshot

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the toolsmith live loop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--ticks",
        type=int,
        default=600,
        help="Number of ticks to simulate",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Override the configured seed",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="YAML config with 'live' and 'training' sections",
    )
    parser.add_argument(
        "--snapshot",
        type=str,
        default=None,
        help="Write the final snapshot to this JSON file",
    )
    parser.add_argument(
        "--train",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Run rate-limited online training after each tick",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging verbosity",
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    live_config, training_config = load_config(args.config)
    if args.seed is not None:
        live_config = dataclasses.replace(live_config, seed=args.seed)

    engine = LiveModeEngine(live_config)
    results = engine.run(args.ticks, training_config if args.train else None)

    if results:
        last = results[-1]
        verbs = Counter(r.verb.value for r in results)
        logger.info(f"Final regime: {last.regime.value} ({last.regime_reason or 'no transition'})")
        logger.info(f"  Resource/min: {last.resource_per_minute:.2f}")
        logger.info(f"  Prediction error (mean): {last.prediction_error_mean:.3f}")
        logger.info(f"  Embedding clusters: {last.embedding_clusters}")
        logger.info(f"  Training steps: {last.training.steps_total} ({last.training.state.value})")
        logger.info(f"  Actions: {dict(verbs.most_common())}")

    if args.snapshot:
        save_snapshot(args.snapshot, engine.create_snapshot())

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
