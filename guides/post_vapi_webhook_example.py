"""Simulate a Vapi end-of-call report against a running ``leadflow serve``."""

import sys

import httpx

BASE_URL = "http://127.0.0.1:8000"


def main():
    run_id, call_id = sys.argv[1], sys.argv[2]
    reason = sys.argv[3] if len(sys.argv) > 3 else "customer-did-not-answer"
    payload = {
        "message": {
            "type": "end-of-call-report",
            "endedReason": reason,
            "call": {"id": call_id, "metadata": {"workflow_run_id": run_id}},
        }
    }
    response = httpx.post(f"{BASE_URL}/webhooks/vapi", json=payload)
    response.raise_for_status()
    print(response.json())


if __name__ == "__main__":
    main()
