#!/usr/bin/env python3
"""
Diagnose the alert table and optionally repair it.
"""

import asyncio
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from lastmile.db.session import AsyncSessionLocal
from lastmile.detect.diagnostics import AlertDiagnostics


async def diagnose(apply_cleanup: bool = False) -> None:
    async with AsyncSessionLocal() as db:
        diagnostics = AlertDiagnostics(db)
        report = await diagnostics.diagnose()

        print("Alert Diagnosis")
        print("===============")
        print(f"Total alerts: {report.total_alerts}")
        print(f"Pending: {report.pending_alerts}")
        print(f"Resolved: {report.resolved_alerts}")
        print(f"Shipments with pending alerts: {report.shipments_with_alerts}")
        print(f"Divergence: {report.divergence}")
        print("")

        print(f"Orphaned alerts: {len(report.orphaned_alerts)}")
        for alert in report.orphaned_alerts[:20]:
            print(f"  #{alert.id} {alert.alert_type} shipment={alert.shipment_id}")

        print(f"Duplicate groups: {len(report.duplicate_groups)}")
        for group in report.duplicate_groups[:20]:
            print(
                f"  shipment={group.shipment_id} type={group.alert_type} "
                f"keep=#{group.keep_id} drop={group.duplicate_ids}"
            )

        print(f"Alerts on finalized shipments: {len(report.terminal_alerts)}")
        for alert in report.terminal_alerts[:20]:
            print(f"  #{alert.id} {alert.alert_type} shipment={alert.shipment_id} ({alert.shipment_status})")
        print("")

        print("Recommendations:")
        for recommendation in report.recommendations:
            print(f"  - {recommendation}")

        if not apply_cleanup:
            return

        print("")
        result = await diagnostics.cleanup()
        print("Cleanup applied")
        print(f"  orphaned removed: {result.orphaned_removed}")
        print(f"  duplicates consolidated: {result.duplicates_consolidated}")
        print(f"  resolved on finalized shipments: {result.terminal_resolved}")
        print(f"  total: {result.total_cleaned}")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Diagnose shipment alerts")
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Apply the repairs after printing the report",
    )
    args = parser.parse_args()
    asyncio.run(diagnose(apply_cleanup=args.cleanup))
