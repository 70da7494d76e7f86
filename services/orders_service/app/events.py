import json
from datetime import datetime, timezone
from pathlib import Path

from jsonschema import validate as jsonschema_validate

EVENT_TYPE = "OrderCreated"
EVENT_VERSION = "1.0"

_SCHEMA_CACHE = None


def _repo_root() -> Path:
    # events.py -> app -> orders_service -> services -> repo root
    return Path(__file__).resolve().parents[3]


def _load_schema() -> dict:
    global _SCHEMA_CACHE
    if _SCHEMA_CACHE is None:
        schema_path = _repo_root() / "events" / "order-created.schema.json"
        _SCHEMA_CACHE = json.loads(schema_path.read_text(encoding="utf-8"))
    return _SCHEMA_CACHE


def build_order_created_event(order: dict) -> dict:
    event = {
        "type": EVENT_TYPE,
        "version": EVENT_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": order,
    }
    jsonschema_validate(instance=event, schema=_load_schema())
    return event


def encode_event(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")
