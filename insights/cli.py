# Copyright (c) 2026 Nenad Vasic. All rights reserved.
# Licensed under the Business Source License 1.1 (BSL-1.1)
# See LICENSE file in the project root for full license text.

"""
EchoVault Insights CLI — run the sweep and inspect per-user results.

Usage:
    echovault-insights sweep                      One daily sweep over all users, now
    echovault-insights sweep --loop               Run the daily scheduler in the foreground
    echovault-insights patterns USER              Recompute and print patterns
    echovault-insights patterns USER --category work
    echovault-insights patterns USER --cached     Print stored patterns without recomputing
    echovault-insights burnout USER               On-demand burnout assessment
    echovault-insights goals USER                 List goals
    echovault-insights goals USER --state active  Filter by state
    echovault-insights resolve USER SIGNAL ACTION reactivate | achieve | abandon
    echovault-insights exclude USER TYPE [--entity TAG] [--permanent]
    echovault-insights --data-dir PATH            Override data directory
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from core.paths import configure
from insights.config import setup_logging
from insights.schemas import InsightsError
from insights.store import DocumentStore


def _store(data_dir: Path) -> DocumentStore:
    paths = configure(data_dir)
    paths.ensure_dirs()
    setup_logging()
    return DocumentStore(paths.store_dir)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _sweep(store: DocumentStore, loop: bool) -> None:
    from insights.scheduler import daily_pattern_refresh, run_scheduler
    if loop:
        run_scheduler(store)
    else:
        _print(daily_pattern_refresh(store))


def _patterns(store: DocumentStore, user_id: str, category: str = None, cached: bool = False) -> None:
    from insights.patterns import get_patterns
    from insights.triggers import refresh_patterns
    if not cached:
        count = refresh_patterns(store, user_id, category)
        print(f"{count} insight(s) in summary", file=sys.stderr)
    _print(get_patterns(store, user_id, category))


def _burnout(store: DocumentStore, user_id: str) -> None:
    from insights.burnout import compute_burnout_risk_on_demand
    _print(compute_burnout_risk_on_demand(store, user_id).to_record())


def _goals(store: DocumentStore, user_id: str, state: str = None) -> None:
    from insights.goals import list_goal_states
    goals = list_goal_states(store, user_id, states=[state] if state else None)
    if not goals:
        print("No goals.")
        return
    for goal in goals:
        print(f"  [{goal['state']:<9}] {goal.get('displayName') or goal['topic']}"
              f"  ({goal['id']}, updated {goal.get('lastUpdated', '?')[:10]})")


def _resolve(store: DocumentStore, user_id: str, signal_id: str, action: str) -> None:
    from insights.goals import resolve_goal_action
    _print(resolve_goal_action(store, user_id, signal_id, action))


def _exclude(store: DocumentStore, user_id: str, pattern_type: str,
             entity: str = None, permanent: bool = False) -> None:
    from insights.exclusions import add_exclusion
    context = {"entity": entity} if entity else {}
    _print(add_exclusion(store, user_id, pattern_type, context, permanent=permanent))


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="echovault-insights",
        description="EchoVault insight engine: patterns, goals and burnout risk",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Override data directory (default: $ECHOVAULT_DATA_DIR or ~/.echovault/)",
    )
    parser.add_argument(
        "--version", action="store_true",
        help="Show version and exit",
    )

    sub = parser.add_subparsers(dest="command")

    sweep_parser = sub.add_parser("sweep", help="Recompute patterns for every user")
    sweep_parser.add_argument("--loop", action="store_true",
                              help="Stay running and sweep daily at the configured hour")

    patterns_parser = sub.add_parser("patterns", help="Recompute and show a user's patterns")
    patterns_parser.add_argument("user")
    patterns_parser.add_argument("--category", default=None, help="Only entries in this category")
    patterns_parser.add_argument("--cached", action="store_true", help="Show stored documents only")

    burnout_parser = sub.add_parser("burnout", help="On-demand burnout assessment")
    burnout_parser.add_argument("user")

    goals_parser = sub.add_parser("goals", help="List a user's goals")
    goals_parser.add_argument("user")
    goals_parser.add_argument("--state", default=None,
                              choices=["proposed", "active", "paused", "achieved", "abandoned"])

    resolve_parser = sub.add_parser("resolve", help="Answer a stale-goal prompt")
    resolve_parser.add_argument("user")
    resolve_parser.add_argument("signal_id")
    resolve_parser.add_argument("action", choices=["reactivate", "achieve", "abandon"])

    exclude_parser = sub.add_parser("exclude", help="Dismiss a pattern type for a user")
    exclude_parser.add_argument("user")
    exclude_parser.add_argument("pattern_type")
    exclude_parser.add_argument("--entity", default=None, help="Only this entity tag")
    exclude_parser.add_argument("--permanent", action="store_true", help="Never expire")

    args = parser.parse_args()

    if args.version:
        try:
            from importlib.metadata import version
            print(f"echovault-insights {version('echovault-insights')}")
        except Exception:
            print("echovault-insights (version unknown — not installed via pip)")
        sys.exit(0)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Resolve data dir: flag → env/default (handled by InsightsPaths)
    from core.paths import get_paths
    data_dir = args.data_dir.expanduser().resolve() if args.data_dir else get_paths().data_dir
    store = _store(data_dir)

    try:
        if args.command == "sweep":
            _sweep(store, args.loop)
        elif args.command == "patterns":
            _patterns(store, args.user, args.category, args.cached)
        elif args.command == "burnout":
            _burnout(store, args.user)
        elif args.command == "goals":
            _goals(store, args.user, args.state)
        elif args.command == "resolve":
            _resolve(store, args.user, args.signal_id, args.action)
        elif args.command == "exclude":
            _exclude(store, args.user, args.pattern_type, args.entity, args.permanent)
    except InsightsError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
