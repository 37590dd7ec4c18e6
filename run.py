#!/usr/bin/env python3
"""
TrialGuard - Command Line Launcher
===================================
Database setup, data quality runs and the API server.

Usage:
    python run.py init-db [--drop]                       # Create tables
    python run.py analyze TRIAL DOMAIN SOURCE [-r ID]    # Analyze one batch
    python run.py sweep                                  # Analyze every batch
    python run.py serve [--port 8000]                    # Run the API
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# =============================================================================
# CONFIGURATION
# =============================================================================

PROJECT_ROOT = Path(__file__).parent.resolve()
BACKEND_DIR = PROJECT_ROOT / "backend"

# Server ports
BACKEND_PORT = 8000


# =============================================================================
# UTILITIES
# =============================================================================

def print_header(text):
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print('=' * 60)


def print_error(text):
    print(f"\nERROR: {text}")


def print_success(text):
    print(f"\n{text}")


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_init_db(args):
    from trialguard.database.connection import get_db_manager
    
    print_header("Creating Tables")
    db = get_db_manager()
    db.create_tables(drop_existing=args.drop)
    print_success("Database ready")
    return True


def cmd_analyze(args):
    from trialguard.exceptions import WorkflowError
    from trialguard.workflow.runner import get_workflow, reset_workflow
    
    print_header(f"Analyzing {args.trial_id} / {args.domain} / {args.source}")
    try:
        result = get_workflow().analyze_domain_data(
            args.trial_id, args.domain, args.source, args.record or None
        )
    except WorkflowError as e:
        print_error(str(e))
        return False
    finally:
        reset_workflow()
    
    summary = result.to_dict()
    if args.json:
        print(json.dumps(summary, indent=2, default=str))
    else:
        plan = summary["plan"]
        print(f"  Records evaluated: {summary['records_evaluated']}")
        print(f"  Findings:          {len(summary['findings'])}")
        print(f"  Created:           {plan['creates']}")
        print(f"  Updated:           {plan['updates']}")
        print(f"  Resolved:          {plan['resolves']}")
        print(f"  Notifications:     {summary['notifications_sent']}")
    return True


def cmd_sweep(args):
    from trialguard.workflow.runner import get_workflow, reset_workflow
    
    print_header("Sweeping All Batches")
    try:
        results = get_workflow().sweep()
    finally:
        reset_workflow()
    
    for result in results:
        trial_id, domain, source = result.batch_key
        plan = result.plan
        print(f"  {trial_id}/{domain}/{source}: {len(plan.creates)} created, "
              f"{len(plan.updates)} updated, {len(plan.resolves)} resolved")
    print_success(f"{len(results)} batches analyzed")
    return True


def cmd_serve(args):
    import uvicorn
    
    sys.path.insert(0, str(BACKEND_DIR))
    print_header(f"Starting API on port {args.port}")
    uvicorn.run("app.main:app", host=args.host, port=args.port, reload=args.reload)
    return True


# =============================================================================
# ENTRY POINT
# =============================================================================

def main():
    parser = argparse.ArgumentParser(
        description="TrialGuard - Clinical Data Quality Workflow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py init-db
  python run.py analyze TRIAL-001 LB "Central Lab"
  python run.py analyze TRIAL-001 LB "Central Lab" -r LB-0001 -r LB-0002
  python run.py sweep
  python run.py serve --port 8000
        """
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)
    
    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.add_argument("--drop", action="store_true", help="Drop existing tables first (DESTRUCTIVE)")
    init_parser.set_defaults(func=cmd_init_db)
    
    analyze_parser = subparsers.add_parser("analyze", help="Analyze one batch of domain records")
    analyze_parser.add_argument("trial_id")
    analyze_parser.add_argument("domain")
    analyze_parser.add_argument("source")
    analyze_parser.add_argument("-r", "--record", action="append", help="Restrict to a record id (repeatable)")
    analyze_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    analyze_parser.set_defaults(func=cmd_analyze)
    
    sweep_parser = subparsers.add_parser("sweep", help="Analyze every batch with data or open signals")
    sweep_parser.set_defaults(func=cmd_sweep)
    
    serve_parser = subparsers.add_parser("serve", help="Run the API server")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=BACKEND_PORT)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.set_defaults(func=cmd_serve)
    
    args = parser.parse_args()
    
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s | %(levelname)s | %(message)s',
    )
    
    try:
        success = args.func(args)
    except KeyboardInterrupt:
        success = False
    except Exception as e:
        print_error(f"Unexpected error: {e}")
        success = False
    
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
