"""Outbound management CLI.

Creates and drops the database schema and runs the periodic jobs by hand.

Usage:
    python src/manage.py setup-db             # Create all tables
    python src/manage.py drop-db              # Drop all tables
    python src/manage.py drain [--batch 50]   # Run one drain loop
    python src/manage.py digest               # Send the due digests
    python src/manage.py purge [--hours 24]   # Delete old sent rows
"""

import argparse
import json
import sys


def _domain():
    from outbound.domain import outbound

    outbound.init()
    return outbound


def setup_database():
    from outbound.utils.db import setup_db

    domain = _domain()
    print("Creating outbound database schema...")
    setup_db(domain)
    print("Done.")


def drop_database():
    from outbound.utils.db import drop_db

    domain = _domain()
    print("Dropping outbound database schema...")
    drop_db(domain)
    print("Done.")


def run_command(command):
    domain = _domain()
    with domain.domain_context():
        return domain.process(command, asynchronous=False)


def main():
    parser = argparse.ArgumentParser(description="Outbound queue management")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("setup-db", help="Create all database tables")
    subparsers.add_parser("drop-db", help="Drop all database tables")

    drain_parser = subparsers.add_parser("drain", help="Run one drain loop over the due messages")
    drain_parser.add_argument("--batch", type=int, default=None, help="Maximum messages to process")

    subparsers.add_parser("digest", help="Send the due digests")

    purge_parser = subparsers.add_parser("purge", help="Delete sent messages older than N hours")
    purge_parser.add_argument("--hours", type=int, default=24)

    args = parser.parse_args()

    if args.command == "setup-db":
        setup_database()
    elif args.command == "drop-db":
        drop_database()
    elif args.command == "drain":
        from outbound.queue.dispatcher import ProcessMessageQueue

        print(json.dumps(run_command(ProcessMessageQueue(batch_size=args.batch)), indent=2, default=str))
    elif args.command == "digest":
        from outbound.digest.aggregator import FlushDigests

        print(json.dumps(run_command(FlushDigests()), indent=2, default=str))
    elif args.command == "purge":
        from outbound.queue.operations import PurgeSentMessages

        print(f"Purged {run_command(PurgeSentMessages(older_than_hours=args.hours))} messages.")
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
