"""Run one incident check and print the result as JSON.

Usage:
    uv run python -m scripts.run_check
"""

import asyncio
import json
import logging
import sys

from incident_relay.config import get_settings
from incident_relay.engine.runs import run_check
from incident_relay.state.store import open_state_store


async def main() -> None:
    """Run a single reconciliation pass against the configured store."""
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store = open_state_store()
    try:
        report = await run_check(store, trigger="cli")
    except Exception as e:
        print(json.dumps({"error": "Failed to process incidents", "details": str(e)}, indent=2), file=sys.stderr)
        sys.exit(1)
    finally:
        store.kv.close()
    print(json.dumps(report.to_response(), indent=2))


if __name__ == "__main__":
    asyncio.run(main())
