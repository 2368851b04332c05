#!/usr/bin/env python3
"""
Sample ETL quality check step.

Validates that extracted data meets simple expectations.  Any failed check raises,
which ends the run as a failure and notifies the ``--email`` recipients.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, List

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from scripto import Script, ScriptError, parse_positive_int


class QualityCheckError(ScriptError):
    """A quality expectation was not met."""


class QualityCheck(Script):
    def validate_argument(self, key: Any, value: Any) -> List[str]:
        errors = super().validate_argument(key, value)
        if key == "min_records" and parse_positive_int(value) is None:
            errors.append('"min_records" must be a positive integer.')
        return errors

    def run(self) -> None:
        input_path = Path(self.get_argument("input"))
        if not input_path.exists():
            raise QualityCheckError(f"extracted file not found: {input_path}")

        extracted = json.loads(input_path.read_text(encoding="utf-8"))
        records = extracted.get("records", [])
        min_records = parse_positive_int(self.get_argument("min_records"))
        if len(records) < min_records:
            raise QualityCheckError(
                f"record_count={len(records)} is below min_records={min_records}"
            )

        totals = [float(record.get("order_total", 0.0)) for record in records]
        avg_order = sum(totals) / len(totals)
        status = "WARN" if avg_order < float(self.get_argument("warn_average_below")) else "OK"
        self.log(f"{status}: quality checks passed, records={len(records)}, avg_order={avg_order:.2f}")


script = QualityCheck(
    {
        "summary": "Run quality checks against sample ETL artifacts.",
        "arguments": {
            "input": {
                "short": "i",
                "description": "Extracted JSON file to check.",
                "default_value": "workers/sample/state/extracted_orders.json",
            },
            "min_records": {
                "description": "Minimum number of records expected.",
                "default_value": 1,
            },
            "warn_average_below": {
                "description": "Average order value below which a warning is printed.",
                "default_value": 25.0,
            },
        },
    }
)


if __name__ == "__main__":
    script.execute()
