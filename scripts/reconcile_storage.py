#!/usr/bin/env python
"""
Report storage objects and metadata records that have lost their partner.

Orphaned objects are left behind when a compensating delete fails after a
metadata write failed; dangling records are left behind by a partial
delete. This script only reports them, it never deletes anything.

Usage:
    PYTHONPATH=.
    python scripts/reconcile_storage.py
    python scripts/reconcile_storage.py --backend opensearch --json
"""

import argparse
import json
import sys
from dataclasses import asdict, dataclass, field

from api.files.search_store import OpenSearchMetadataStore
from api.files.storage import S3StorageAdapter
from api.files.store import MetadataStore, SQLMetadataStore
from core.config import get_settings
from core.db import create_db_and_tables, get_engine
from core.exceptions import FileVaultError
from core.logger import logger
from core.opensearch import get_opensearch_client


@dataclass
class ReconcileReport:
    objects: int = 0
    records: int = 0
    orphaned_objects: list[str] = field(default_factory=list)
    dangling_records: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.orphaned_objects and not self.dangling_records


def reconcile(storage: S3StorageAdapter, store: MetadataStore) -> ReconcileReport:
    """Compare every stored object key with every recorded storage ref"""
    object_refs = set(storage.iter_refs())
    record_refs = set(store.iter_storage_refs())
    return ReconcileReport(
        objects=len(object_refs),
        records=len(record_refs),
        orphaned_objects=sorted(object_refs - record_refs),
        dangling_records=sorted(record_refs - object_refs),
    )


def build_store(backend: str) -> MetadataStore:
    settings = get_settings()
    if backend == "opensearch":
        client = get_opensearch_client(settings)
        if client is None:
            logger.error("OPENSEARCH_HOST is not set")
            sys.exit(1)
        return OpenSearchMetadataStore(client, settings.OPENSEARCH_INDEX)
    engine = get_engine()
    create_db_and_tables(engine)
    return SQLMetadataStore(engine)


def main():
    parser = argparse.ArgumentParser(
        description="Report orphaned storage objects and dangling metadata records",
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "opensearch"],
        default=None,
        help="Metadata store to compare against (defaults to METADATA_BACKEND)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON",
    )
    args = parser.parse_args()

    settings = get_settings()
    backend = args.backend or settings.METADATA_BACKEND.strip().lower()

    try:
        report = reconcile(S3StorageAdapter.from_settings(settings), build_store(backend))
    except FileVaultError as e:
        logger.error(f"Reconciliation failed: {e.message}")
        sys.exit(1)

    if args.json:
        print(json.dumps(asdict(report), indent=2))
    else:
        logger.info(f"Objects in storage: {report.objects}")
        logger.info(f"Metadata records: {report.records}")
        for ref in report.orphaned_objects:
            logger.warning(f"Orphaned object (no record): {ref}")
        for ref in report.dangling_records:
            logger.warning(f"Dangling record (no object): {ref}")

    sys.exit(0 if report.consistent else 2)


if __name__ == "__main__":
    main()
