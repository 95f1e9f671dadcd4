"""Daily cancellation of subscriptions left past_due beyond the grace period (run from cron)."""
import json
import os

from dotenv import load_dotenv

load_dotenv()

from accessgate.core.config import settings
from accessgate.core.logging import configure_logging
from accessgate.core.validation import validate_env
from accessgate.features.billing.delinquency_job import run_delinquency_job


def main(limit: int | None = None) -> dict:
    configure_logging(settings.ENV)
    validate_env()
    batch = limit if limit is not None else int(os.getenv("BILLING_DELINQUENCY_LIMIT", "500"))
    return run_delinquency_job(limit=batch)


if __name__ == "__main__":
    result = main()
    print(json.dumps(result, indent=2))
