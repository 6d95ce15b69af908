"""Seed the plan catalog and register the recurring lifecycle jobs."""

import argparse

from dotenv import load_dotenv

from app.db import SessionLocal
from app.services.billing.plans import seed_plans
from app.services.scheduler import register_recurring_jobs


def parse_args():
    parser = argparse.ArgumentParser(description="Seed billing plans and jobs.")
    parser.add_argument(
        "--skip-plans", action="store_true", help="Do not create catalog plans."
    )
    parser.add_argument(
        "--skip-jobs", action="store_true", help="Do not register recurring jobs."
    )
    return parser.parse_args()


def main() -> None:
    load_dotenv()
    args = parse_args()
    db = SessionLocal()
    try:
        if not args.skip_plans:
            created = seed_plans(db)
            print(f"Plans: {len(created)} created.")
        if not args.skip_jobs:
            jobs = register_recurring_jobs(db)
            for job in jobs:
                state = "enabled" if job.enabled else "disabled"
                print(f"Recurring job {job.schedule_id}: {job.cron} ({state})")
    finally:
        db.close()


if __name__ == "__main__":
    main()
