"""Publish a payment event envelope directly to the work queue.

Useful for replaying a lost creation event or for duplicate-delivery testing
against the processor.
"""

import argparse
import asyncio
import json
from pathlib import Path
from uuid import uuid4

from aiokafka import AIOKafkaProducer


async def publish(bootstrap_servers: str, topic: str, envelope: dict) -> None:
    """Open producer, publish one message, close producer."""

    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await producer.start()
    try:
        await producer.send_and_wait(
            topic,
            json.dumps(envelope).encode("utf-8"),
            key=envelope["aggregate_id"].encode("utf-8"),
        )
    finally:
        await producer.stop()


def build_envelope(payment: dict) -> dict:
    """Wrap a camelCase payment event in the shared envelope shape."""

    return {
        "event_id": str(uuid4()),
        "event_type": f"payments.{payment.get('status', 'PENDING').lower()}",
        "aggregate_id": payment["paymentId"],
        "trace_id": str(uuid4()),
        "payload": payment,
    }


def main() -> None:
    """Parse CLI args and publish one payment event."""

    parser = argparse.ArgumentParser(description="Publish a payment event to the work queue.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--topic", default="payments.queue")
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline payment event JSON")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to payment event JSON file")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")

    if args.json_inline:
        payment = json.loads(args.json_inline)
    else:
        payment = json.loads(Path(args.json_file).read_text())
    if "paymentId" not in payment:
        raise SystemExit("payment event needs a paymentId")

    envelope = build_envelope(payment)
    asyncio.run(publish(args.bootstrap_servers, args.topic, envelope))
    print(f"Published event_id={envelope['event_id']} to topic={args.topic}")


if __name__ == "__main__":
    main()
