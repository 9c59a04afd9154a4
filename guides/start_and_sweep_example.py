"""Start the sample workflow for a contact and sweep every minute.

Run from the repository root with provider credentials in the environment:

    VAPI_API_KEY=... TWILIO_ACCOUNT_SID=... TWILIO_AUTH_TOKEN=... \
        python guides/start_and_sweep_example.py c1
"""

import asyncio
import logging
import sys

from leadflow import build_runtime
from leadflow.config import load_config


async def main():
    contact_id = sys.argv[1] if len(sys.argv) > 1 else "c1"
    runtime = build_runtime(load_config("guides/config.yaml"))

    run, created = await runtime.start_run("new_lead", contact_id)
    print(f"{'Started' if created else 'Resuming'} run {run.id} at {run.current_node_id}")

    # Call outcomes arrive through the webhook server (see post_vapi_webhook_example.py).
    while True:
        for outcome in await runtime.sweeper.sweep():
            print(f"{outcome.run_id} {outcome.node_id} -> {outcome.transition.value}")
        current = await runtime.repository.get_run(run.id)
        if current is None or not current.is_active:
            break
        await asyncio.sleep(60)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
