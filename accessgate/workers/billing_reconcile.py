"""Scheduled billing reconciliation (run from cron)."""
import json
import os

from dotenv import load_dotenv

load_dotenv()

from accessgate.core.config import settings
from accessgate.core.logging import configure_logging
from accessgate.core.validation import validate_env
from accessgate.features.billing.reconcile_job import run_reconcile_job


def main(limit: int | None = None) -> dict:
    configure_logging(settings.ENV)
    validate_env()
    batch = limit if limit is not None else int(os.getenv("BILLING_RECONCILE_LIMIT", "500"))
    return run_reconcile_job(limit=batch)


if __name__ == "__main__":
    result = main()
    print(json.dumps(result, indent=2))
