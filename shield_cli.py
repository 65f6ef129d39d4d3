#!/usr/bin/env python3
"""
Shield Gateway - Command Line Interface

Usage:
    shield status                   Show standby status from the persisted state
    shield stats                    Show statistics from the persisted state
    shield reset --confirm          Confirm a manual reset out of STANDBY
    shield verify-ledger <path>     Verify a ledger JSONL file (exit 1 on failure)
    shield simulate [--rounds N]    Drive a shield with pseudo-random rounds
    shield config                   Show the effective configuration
    shield serve                    Run the HTTP API
"""

import argparse
import dataclasses
import json
import logging
import random
import sys
from pathlib import Path
from typing import List, Optional

from shield_gateway.config import ShieldConfig
from shield_gateway.errors import ShieldError
from shield_gateway.ledger import AuditLedger
from shield_gateway.persistence import InMemoryPersistence
from shield_gateway.shield import Shield, logger as shield_logger


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    shield_logger.setLevel(level)


def load_config(config_path: Optional[Path]) -> dict:
    """Load configuration from a JSON file (missing path means defaults)."""
    if config_path and config_path.exists():
        try:
            with open(config_path) as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"CONFIG_ERROR: Invalid JSON in config file '{config_path}': {e}. "
                f"Please check the config file syntax."
            ) from e
    return {}


def build_config(args) -> ShieldConfig:
    """File config, then SHIELD_* environment, then command-line overrides."""
    cfg = ShieldConfig.from_env(ShieldConfig.from_dict(load_config(args.config)))
    persistence = cfg.persistence
    backend = args.backend or (persistence.backend if persistence.backend != "memory" else "json")
    persistence = dataclasses.replace(
        persistence,
        backend=backend,
        state_path=args.state or persistence.state_path,
        persist_async=False,
    )
    cfg = dataclasses.replace(cfg, persistence=persistence)
    cfg.raise_if_invalid()
    return cfg


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def cmd_status(args) -> int:
    """Show standby status."""
    with Shield(build_config(args)) as shield:
        status = shield.get_standby_status()
    if args.json:
        _print_json(status)
        return 0
    print(f"\n{'='*60}")
    print("SHIELD STATUS")
    print(f"{'='*60}")
    if not status["is_standby"]:
        print("Mode: ACTIVE (operating)")
    else:
        print("Mode: STANDBY (manual reset required)")
        print(f"Reason:        {status['reason']}")
        print(f"Triggered at:  {status['triggered_at']}")
        print(f"In standby ms: {status['time_in_standby_ms']}")
        print(f"Standby count: {status['standby_count']}")
    print(f"{'='*60}\n")
    return 0


def cmd_stats(args) -> int:
    """Show shield statistics."""
    with Shield(build_config(args)) as shield:
        _print_json(shield.get_stats())
    return 0


def cmd_reset(args) -> int:
    """Confirm a manual reset against the persisted state."""
    with Shield(build_config(args)) as shield:
        result = shield.manual_reset(confirmed=bool(args.confirm))
    _print_json(result.to_dict())
    if result.success or result.already_active:
        return 0
    return 1


def cmd_verify_ledger(args) -> int:
    """Verify a ledger JSONL file."""
    ok, reason, count = AuditLedger.verify_file(args.path)
    print(f"Verifying ledger {args.path}...")
    print(f"Records checked: {count}")
    if ok:
        print(f"\n✓ Ledger integrity verified ({reason})")
        return 0
    print(f"\n✗ Ledger integrity check FAILED: {reason} at record {count}")
    return 1


def cmd_simulate(args) -> int:
    """Drive an in-memory shield with pseudo-random rounds."""
    rng = random.Random(args.seed)
    now = [1_700_000_000.0]

    def clock() -> float:
        return now[0]

    cfg = dataclasses.replace(
        ShieldConfig(),
        persistence=dataclasses.replace(ShieldConfig().persistence, backend="memory", persist_async=False),
    )
    counts = {"PROCEED": 0, "INVERT": 0, "BLOCK": 0, "STANDBY": 0}
    resets = 0
    wins = 0
    trades = 0
    with Shield(cfg, backend=InMemoryPersistence(), clock=clock) as shield:
        for _ in range(args.rounds):
            now[0] += 1.0 + rng.random() * 2.0
            prediction = rng.choice("AB")
            decision = shield.check(prediction)
            counts[decision.recommendation.value] += 1
            actual = "A" if rng.random() < args.bias else "B"
            traded = decision.can_proceed and decision.final_direction is not None
            if traded:
                shield.record_trade(decision.final_direction, rng.choice((5, 10, 25)))
                trades += 1
                if decision.final_direction.value == actual:
                    wins += 1
            shield.record_outcome(actual, prediction)
            if traded:
                shield.learn(prediction, actual, decision.was_inverted)
            if shield.is_standby:
                now[0] += 30.0
                shield.manual_reset(confirmed=True)
                resets += 1
        summary = {
            "rounds": args.rounds,
            "seed": args.seed,
            "bias": args.bias,
            "decisions": counts,
            "trades": trades,
            "wins": wins,
            "manual_resets": resets,
            "final_threshold": round(shield.adaptive_threshold, 4),
            "ledger_ok": shield.verify_ledger(),
        }
    _print_json(summary)
    return 0


def cmd_config(args) -> int:
    """Show the effective configuration."""
    _print_json(build_config(args).to_dict())
    return 0


def cmd_serve(args) -> int:
    """Run the HTTP API."""
    import uvicorn

    from shield_gateway.server import create_app

    cfg = build_config(args)
    cfg = dataclasses.replace(cfg, persistence=dataclasses.replace(cfg.persistence, persist_async=True))
    shield = Shield(cfg, start_scheduler=True)
    try:
        uvicorn.run(create_app(shield), host=args.host, port=args.port)
    finally:
        shield.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Shield Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--config", type=Path, help="Path to config JSON file")
    parser.add_argument("--state", help="Path of the persisted shield state")
    parser.add_argument("--backend", choices=["json", "sqlite"], help="State backend (default: json)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    status_parser = subparsers.add_parser("status", help="Show standby status")
    status_parser.add_argument("--json", action="store_true", help="Print raw JSON")
    status_parser.set_defaults(func=cmd_status)

    stats_parser = subparsers.add_parser("stats", help="Show statistics")
    stats_parser.set_defaults(func=cmd_stats)

    reset_parser = subparsers.add_parser("reset", help="Manual reset out of STANDBY")
    reset_parser.add_argument("--confirm", action="store_true", help="Explicitly confirm the reset")
    reset_parser.set_defaults(func=cmd_reset)

    ledger_parser = subparsers.add_parser("verify-ledger", help="Verify a ledger JSONL file")
    ledger_parser.add_argument("path", help="Path to the ledger JSONL file")
    ledger_parser.set_defaults(func=cmd_verify_ledger)

    sim_parser = subparsers.add_parser("simulate", help="Run a pseudo-random simulation")
    sim_parser.add_argument("--rounds", type=int, default=200, help="Number of rounds")
    sim_parser.add_argument("--seed", type=int, default=0, help="Random seed")
    sim_parser.add_argument("--bias", type=float, default=0.5, help="Probability of outcome A")
    sim_parser.set_defaults(func=cmd_simulate)

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.set_defaults(func=cmd_config)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    serve_parser.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return int(args.func(args) or 0)
    except (ShieldError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
