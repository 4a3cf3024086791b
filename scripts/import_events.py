"""
CSV Import Script for Events

Events go through the ingestion pipeline, so they are indexed and broadcast
exactly like tracked events. Each chunk is committed atomically.

Usage:
    python scripts/import_events.py <api-key> <path-to-csv>

CSV Format:
    event_type,user_id,session_id,timestamp,properties_json
"""

import asyncio
import csv
import json
import sys
from pathlib import Path

# Add parent directory to path to import service modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from analytics_service.core.config import settings
from analytics_service.core.errors import AnalyticsError
from analytics_service.schemas.event import EventCreate
from analytics_service.services.container import build_services

REQUIRED_HEADERS = {'event_type', 'user_id', 'session_id', 'timestamp', 'properties_json'}


def parse_row(row: dict) -> EventCreate:
    properties = {}
    if row['properties_json'] and row['properties_json'].strip():
        properties = json.loads(row['properties_json'])

    return EventCreate(
        type=row['event_type'],
        user_id=row['user_id'] or None,
        session_id=row['session_id'] or None,
        timestamp=row['timestamp'] or None,
        properties=properties
    )


async def import_csv(api_key: str, file_path: str, batch_size: int = 1000):
    """
    Import events from CSV file

    Args:
        api_key: API key of the tenant that owns the events
        file_path: Path to CSV file
        batch_size: Number of events per transaction
    """
    file_path = Path(file_path)

    if not file_path.exists():
        print(f"Error: File not found: {file_path}")
        sys.exit(1)

    print(f"Starting import from: {file_path}")

    services = build_services(settings.model_copy(update={"rate_limit_enabled": False}))
    total_imported = 0
    total_skipped = 0

    try:
        tenant = await services.tenants.resolve(api_key)

        with open(file_path, 'r', encoding='utf-8') as f:
            reader = csv.DictReader(f)

            if not REQUIRED_HEADERS.issubset(reader.fieldnames or []):
                print(f"Error: CSV must have headers: {REQUIRED_HEADERS}")
                print(f"Found headers: {reader.fieldnames}")
                sys.exit(1)

            batch = []

            for i, row in enumerate(reader, 1):
                try:
                    batch.append(parse_row(row))
                except (ValueError, ValidationError) as e:
                    total_skipped += 1
                    print(f"Skipping row {i}: {e}")
                    continue

                if len(batch) >= batch_size:
                    stored = await services.pipeline.ingest_batch(tenant.id, batch)
                    total_imported += len(stored)
                    print(f"Imported {total_imported} events | Skipped: {total_skipped}")
                    batch = []

            if batch:
                stored = await services.pipeline.ingest_batch(tenant.id, batch)
                total_imported += len(stored)

    except AnalyticsError as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    finally:
        await services.close()

    print("\n" + "=" * 50)
    print("Import completed!")
    print(f"Tenant: {tenant.name}")
    print(f"Total imported: {total_imported}")
    print(f"Total skipped: {total_skipped}")
    print(f"Index mirror failures: {services.pipeline.mirror_failures}")
    print("=" * 50)


def main():
    if len(sys.argv) != 3:
        print("Usage: python scripts/import_events.py <api-key> <path-to-csv>")
        sys.exit(1)

    asyncio.run(import_csv(sys.argv[1], sys.argv[2]))


if __name__ == "__main__":
    main()
