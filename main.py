"""
Nudge Follow-up Scheduler - Main Entry Point

Usage:
    # Start the API server:
    python main.py serve

    # Run the sweep loop (sends due follow-ups, flushes the send-later queue):
    python main.py worker [interval_seconds]

    # Run a single sweep and exit:
    python main.py sweep

    # Show follow-up stats:
    python main.py stats

    # Show one sequence with its messages:
    python main.py show <sequence_id> <user_id>

    # Initialize database only:
    python main.py init
"""
import sys
import json
import logging
import os
import uvicorn
from nudge.config import APP_HOST, APP_PORT, DEBUG, SCHEMA_VERSION, SWEEP_INTERVAL_SECONDS
from nudge.errors import SequenceNotFound
from nudge.followups import FollowUpManager
from nudge.models import init_db, SessionLocal
from nudge.scheduler import build_sweeper, run_worker

# Write to stdout instead of stderr for container log collectors
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("nudge")


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        return

    command = sys.argv[1].lower()
    manager = FollowUpManager()

    if command == "serve":
        port = int(os.getenv("PORT", APP_PORT))
        init_db()
        print(f"\n  Nudge API running at http://localhost:{port}")
        print(f"  Schema: {SCHEMA_VERSION}\n")
        uvicorn.run(
            "nudge.web.api:app",
            host=APP_HOST,
            port=port,
            reload=DEBUG,
        )

    elif command == "init":
        init_db()
        print(f"Database initialized. Schema: {SCHEMA_VERSION}")

    elif command == "worker":
        interval = int(sys.argv[2]) if len(sys.argv) > 2 else SWEEP_INTERVAL_SECONDS
        run_worker(poll_interval=interval)

    elif command == "sweep":
        init_db()
        db = SessionLocal()
        try:
            results = build_sweeper(db).sweep(db)
            print(f"Sweep complete: {json.dumps(results)}")
        finally:
            db.close()

    elif command == "stats":
        init_db()
        db = SessionLocal()
        try:
            stats = manager.get_stats(db)
            print("\n  Nudge Follow-up Stats")
            print("  " + "=" * 45)
            for key, value in stats.items():
                label = key.replace("_", " ").title()
                print(f"  {label:.<35} {value}")
            print()
        finally:
            db.close()

    elif command == "show":
        if len(sys.argv) < 4:
            print("Usage: python main.py show <sequence_id> <user_id>")
            return

        db = SessionLocal()
        try:
            sequence = manager.get(db, sys.argv[3], int(sys.argv[2]))
            print(json.dumps(manager.serialize(sequence), indent=2, default=str))
        except SequenceNotFound as e:
            print(str(e))
        finally:
            db.close()

    else:
        print(f"Unknown command: {command}")
        print(__doc__)


if __name__ == "__main__":
    main()
