"""Trigger one stale-PENDING reconciliation sweep and print the report."""

import argparse
import json

import httpx


def main() -> None:
    """CLI entrypoint for on-demand reconciliation."""

    parser = argparse.ArgumentParser(description="Run the processor's stale-PENDING sweep once.")
    parser.add_argument("--processor-url", default="http://localhost:8001")
    args = parser.parse_args()

    resp = httpx.post(f"{args.processor_url}/internal/reconcile", timeout=30.0)
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
