import hashlib
import json
from datetime import datetime, timedelta
from typing import Any


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def hash_canonical_payload(payload: Any) -> str:
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def time_bucket(moment: datetime, *, width: timedelta) -> int:
    seconds = width.total_seconds()
    if seconds <= 0:
        raise ValueError("TIME_BUCKET_WIDTH_MUST_BE_POSITIVE")
    return int(moment.timestamp() // seconds)


def corrective_action_key(*, entity_id: str, job_name: str, bucket: int) -> str:
    return hash_canonical_payload({"entity_id": entity_id, "job_name": job_name, "bucket": bucket})
