#!/usr/bin/env python3
"""
Sample ETL extract step.

Generates synthetic order records for local testing.
"""

from __future__ import annotations

import json
import random
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from scripto import Script, ScriptError


def generate_records(records: int, seed: int) -> List[Dict[str, object]]:
    rng = random.Random(seed)
    channels = ["organic", "paid-search", "email", "direct", "social"]
    products = ["coffee", "tea", "mug", "grinder", "filter"]
    out: List[Dict[str, object]] = []
    now = datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()
    for idx in range(records):
        amount = round(rng.uniform(9.5, 145.0), 2)
        item_count = rng.randint(1, 8)
        out.append(
            {
                "order_id": f"DEMO-{seed}-{idx + 1:05d}",
                "event_time": now,
                "channel": rng.choice(channels),
                "product": rng.choice(products),
                "item_count": item_count,
                "order_total": amount,
                "currency": "USD",
            }
        )
    return out


def extract(script: Script) -> None:
    records = int(script.get_argument("records"))
    seed = int(script.get_argument("seed"))
    sleep_seconds = float(script.get_argument("sleep_seconds"))
    source = script.get_argument("source")
    if records <= 0:
        raise ScriptError("--records must be >= 1")

    script.log(f"Extracting {records} record(s) from {source} ... ", False)
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    payload = {
        "batch_id": f"extract-{int(time.time())}",
        "source": source,
        "generated_at": datetime.now(tz=timezone.utc).isoformat(),
        "record_count": records,
        "records": generate_records(records, seed),
    }

    output_path = Path(script.get_argument("output"))
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    script.log("DONE!")

    script.log_indent()
    script.log(f"output: {output_path}")
    script.log_unindent()


script = Script(
    {
        "summary": "Generate synthetic order data for demo ETL.",
        "arguments": {
            "output": {
                "short": "o",
                "description": "Path of the JSON file to write.",
                "default_value": "workers/sample/state/extracted_orders.json",
            },
            "records": {
                "short": "n",
                "description": "Number of order records to generate.",
                "default_value": 25,
            },
            "seed": {
                "description": "Random seed for reproducible output.",
                "default_value": 42,
            },
            "sleep_seconds": {
                "description": "Seconds to pause before writing, simulating a slow source.",
                "default_value": 0.5,
            },
            "source": {
                "description": "Name of the upstream source recorded in the batch.",
                "default_value": "demo-orders-api",
            },
        },
        "callback": extract,
    }
)


if __name__ == "__main__":
    script.execute()
