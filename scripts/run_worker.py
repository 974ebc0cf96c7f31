from __future__ import annotations

import argparse
import sys
import time

from crm_backend.app.context import build_context
from crm_backend.app.observability import configure_logging
from crm_backend.app.settings import load_settings


def main() -> int:
    parser = argparse.ArgumentParser(
        description=(
            "Run the campaign delivery worker outside the API process. Set "
            "RECEIPT_ENDPOINT_URL to report receipts over HTTP instead of in-process."
        )
    )
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit.")
    args = parser.parse_args()

    configure_logging()
    context = build_context(load_settings())
    try:
        if args.once:
            result = context.worker.run_once()
            print(
                f"claimed={result.claimed} sent={result.sent} failed={result.failed} "
                f"ok={result.ok} error={result.error or ''}"
            )
            return 0 if result.ok else 1

        context.scheduler.start()
        while context.scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        context.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
