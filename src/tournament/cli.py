"""
Command-line interface for the calibration tournament.

Subcommands:
    run              Replay a JSONL rounds file and write the final result
    validate-config  Check a tournament config file
    horizons         List the configured horizons
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from src.logging_config import configure_logging

from . import config as config_module
from . import horizons as horizons_module
from .records import parse_timestamp
from .tournament import RoundError, Tournament

logger = logging.getLogger(__name__)


def read_rounds(path: Path) -> List[Dict[str, Any]]:
    """
    Read a rounds file: one JSON object per line with round, as_of,
    predictions and labels.

    Raises:
        RoundError: On invalid JSON or a line missing required keys
    """
    rounds = []
    with open(path, "r") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                raise RoundError(f"{path}:{line_num}: invalid JSON: {e}")
            missing = [k for k in ("round", "predictions", "labels") if k not in data]
            if missing:
                raise RoundError(f"{path}:{line_num}: missing keys {missing}")
            rounds.append(data)
    return rounds


def model_ids_from_rounds(rounds: List[Dict[str, Any]]) -> List[str]:
    """Every model id that appears in any round, in first-seen order."""
    seen: Dict[str, None] = {}
    for r in rounds:
        for p in r["predictions"]:
            model_id = p.get("model_id") if isinstance(p, dict) else None
            if isinstance(model_id, str) and model_id:
                seen.setdefault(model_id, None)
    return list(seen)


def cmd_run(args: argparse.Namespace) -> int:
    """Replay rounds and run the elimination phases."""
    try:
        cfg = config_module.load_tournament_config(
            Path(args.config), schema_path=Path(args.schema)
        ) if args.config else config_module.TournamentConfig()
        horizon_set = horizons_module.load_horizons(Path(args.horizons)) \
            if args.horizons else horizons_module.DEFAULT_HORIZONS

        rounds = read_rounds(Path(args.rounds))
        model_ids = args.models.split(",") if args.models else model_ids_from_rounds(rounds)
        if not model_ids:
            print("Error: no models found", file=sys.stderr)
            return 1

        tournament = Tournament(
            model_ids,
            horizons=horizon_set,
            config=cfg,
            diagnostics_path=Path(args.diagnostics) if args.diagnostics else None,
        )

        skipped = 0
        for r in sorted(rounds, key=lambda item: item["round"]):
            as_of = parse_timestamp(r["as_of"]) if r.get("as_of") else None
            try:
                tournament.score_round(r["round"], r["predictions"], r["labels"], as_of=as_of)
            except RoundError as e:
                logger.warning(f"Discarding round {r['round']}: {e}")
                skipped += 1

        result = tournament.run_elimination()
        output = json.dumps(result.to_dict(), indent=2, default=str)
        if args.output:
            Path(args.output).parent.mkdir(parents=True, exist_ok=True)
            with open(args.output, "w") as f:
                f.write(output)
            print(f"Results written to {args.output}")
        else:
            print(output)

        print(
            f"Scored {len(tournament.rounds)} round(s), discarded {skipped}; "
            f"{len(result.rankings)} model(s) ranked",
            file=sys.stderr,
        )
        for ranked in result.rankings:
            print(f"  {ranked.rank}. {ranked.model_id}: {ranked.composite_score:.4f}", file=sys.stderr)
        return 0

    except (config_module.ConfigError, horizons_module.HorizonError, RoundError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_validate_config(args: argparse.Namespace) -> int:
    """Validate a tournament config file."""
    try:
        with open(args.config, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    errors = config_module.validate_tournament_config(data, schema_path=Path(args.schema))
    if errors:
        print(f"Config invalid: {args.config}", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        return 1

    print(f"Config valid: {args.config}")
    return 0


def cmd_horizons(args: argparse.Namespace) -> int:
    """List horizons."""
    try:
        horizon_set = horizons_module.load_horizons(Path(args.horizons))
    except (horizons_module.HorizonError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    for h in horizon_set:
        print(
            f"  {h.horizon_id}: {h.candles_per_window} x {h.bar_size_minutes}m bars, "
            f"{h.ground_truth_method.value} {h.method_params}"
        )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Calibration tournament engine",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output"
    )
    parser.add_argument(
        "--log-dir",
        default="logs",
        help="Directory for tournament.log"
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Log to the console only"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Replay rounds and rank models")
    run_parser.add_argument("--rounds", required=True, help="JSONL file, one round per line")
    run_parser.add_argument("--config", help="Tournament config JSON (defaults if omitted)")
    run_parser.add_argument("--schema", default=str(config_module.DEFAULT_SCHEMA_PATH),
                            help="Config JSON schema")
    run_parser.add_argument("--horizons", help="Horizons YAML (defaults if omitted)")
    run_parser.add_argument("--models", help="Comma-separated model ids (inferred if omitted)")
    run_parser.add_argument("--diagnostics", help="Append per-round diagnostics to this JSONL file")
    run_parser.add_argument("--output", "-o", help="Output file (JSON)")
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate-config", help="Validate a tournament config")
    validate_parser.add_argument("--config", default=str(config_module.DEFAULT_CONFIG_PATH))
    validate_parser.add_argument("--schema", default=str(config_module.DEFAULT_SCHEMA_PATH))
    validate_parser.set_defaults(func=cmd_validate_config)

    horizons_parser = subparsers.add_parser("horizons", help="List configured horizons")
    horizons_parser.add_argument("--horizons", default=str(horizons_module.DEFAULT_HORIZONS_PATH))
    horizons_parser.set_defaults(func=cmd_horizons)

    args = parser.parse_args(argv)

    configure_logging(
        logging.DEBUG if args.verbose else logging.INFO,
        log_dir=None if args.no_log_file else args.log_dir,
    )

    if not args.command:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
