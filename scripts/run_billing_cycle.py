import argparse
import json
from datetime import date

from dotenv import load_dotenv

from app.config import settings
from app.db import SessionLocal
from app.logging import configure_logging
from app.services.billing_cycle import billing_cycle


def parse_args():
    parser = argparse.ArgumentParser(description="Run the partner billing cycle once.")
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Logical run date (YYYY-MM-DD); defaults to today in the billing timezone.",
    )
    parser.add_argument("--job-name", default=None)
    return parser.parse_args()


def main():
    load_dotenv()
    configure_logging(settings.log_level, settings.log_json)
    args = parse_args()
    db = SessionLocal()
    try:
        summary = billing_cycle.run(db, today=args.today, job_name=args.job_name)
    finally:
        db.close()
    print(json.dumps(summary, indent=2, default=str))
    raise SystemExit(0 if summary["success"] else 1)


if __name__ == "__main__":
    main()
