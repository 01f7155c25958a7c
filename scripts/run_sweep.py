#!/usr/bin/env python3
"""
Run one dead-man sweep and exit. Meant for cron or another external scheduler
when DEADMAN_ENABLED is false on the server.
"""

import asyncio
import sys
from pathlib import Path

# Add the parent directory to sys.path to import our modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from dkv.api.deps import Services
from dkv.core.config import get_backend, get_notifier, load_settings, validate_config


async def main() -> int:
    settings = load_settings()
    issues = validate_config(settings)
    if issues:
        for issue in issues:
            print(f"❌ {issue}")
        return 1

    services = Services.build(settings, get_backend(settings), get_notifier(settings))
    report = await services.deadman.sweep()

    if not report.lease_acquired:
        print("⏭️  Another instance holds the sweep lease, nothing to do")
        return 0

    print(f"✓ Checked {report.checked} triggers: {report.healthy} healthy, "
          f"{report.cooling_down} cooling down, {len(report.alerted)} alerted")
    for name in report.unrecorded:
        print(f"⚠️  Alert sent for {name} but the notification time was not recorded")
    for name in report.failed:
        print(f"❌ {name}: alert not delivered or trigger invalid")
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
