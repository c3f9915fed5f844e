"""CLI commands for the workout tracker export service."""

import argparse
import getpass
import logging
import sys
import time

from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.services.auth import get_auth_provider
from app.services.expiry_reaper import ExpiryReaper


def create_user(email: str, password: str | None = None, name: str | None = None) -> None:
    """Create a user account."""
    db: Session = SessionLocal()
    auth_provider = get_auth_provider()

    try:
        # Check if email already exists
        if auth_provider.get_user_by_email(db, email):
            print(f"Error: User with email '{email}' already exists.")
            sys.exit(1)

        # Get password if not provided
        if not password:
            password = getpass.getpass("Password: ")
            password_confirm = getpass.getpass("Confirm password: ")
            if password != password_confirm:
                print("Error: Passwords do not match.")
                sys.exit(1)

        if len(password) < 8:
            print("Error: Password must be at least 8 characters.")
            sys.exit(1)

        auth_provider.create_user(db, email, password, name=name)
        print(f"User created successfully: {email}")

    finally:
        db.close()


def reap_exports() -> dict:
    """Run one reconciliation and expiry pass."""
    result = ExpiryReaper().run_once()
    print(f"Re-enqueued {result['requeued']} export(s), removed {result['removed']} expired export(s).")
    return result


def run_worker(threads: int) -> None:
    """Consume the export queue until interrupted."""
    from dramatiq import Worker

    from app.workers import broker
    import app.workers.export_worker  # noqa: F401  registers the actor

    worker = Worker(broker, queues={settings.export_queue_name}, worker_threads=threads)
    worker.start()
    print(f"Export worker running with {threads} thread(s). Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        worker.stop()


def main():
    logging.basicConfig(level=settings.log_level)

    parser = argparse.ArgumentParser(description="Workout tracker export service CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # create-user command
    create_user_parser = subparsers.add_parser(
        "create-user", help="Create a user account"
    )
    create_user_parser.add_argument(
        "--email", required=True, help="User email address"
    )
    create_user_parser.add_argument(
        "--password", help="User password (will prompt if not provided)"
    )
    create_user_parser.add_argument("--name", help="Display name")

    # reap-exports command
    subparsers.add_parser(
        "reap-exports", help="Re-enqueue lost exports and delete expired ones"
    )

    # run-worker command
    run_worker_parser = subparsers.add_parser(
        "run-worker", help="Process queued export jobs"
    )
    run_worker_parser.add_argument(
        "--threads",
        type=int,
        default=settings.export_worker_threads,
        help="Maximum concurrent renders",
    )

    args = parser.parse_args()

    if args.command == "create-user":
        create_user(args.email, args.password, args.name)
    elif args.command == "reap-exports":
        reap_exports()
    elif args.command == "run-worker":
        run_worker(args.threads)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
