"""Loads the schema registry and checks every event kind maps to a shipped schema."""

import sys

from auctionhouse.events.payloads import EventKind
from auctionhouse.events.validators import EVENT_SCHEMA_MAP
from auctionhouse.validation.validator import get_schema_registry

REQUEST_SCHEMAS = ("create_auction", "place_bid", "proxy_commitment", "buy_now")


def main() -> int:
    # Loading runs the metaschema check on each file.
    registry = get_schema_registry()
    available = set(registry.names())
    missing = [name for name in REQUEST_SCHEMAS if name not in available]
    missing += [
        f"{kind.value} -> {EVENT_SCHEMA_MAP.get(kind)}"
        for kind in EventKind
        if EVENT_SCHEMA_MAP.get(kind) not in available
    ]
    for name in registry.names():
        print(f"ok {name}")
    if missing:
        print("missing: " + ", ".join(missing), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
