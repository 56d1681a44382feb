"""Built-in collect functions.

``record_collection`` writes one JSON record per run under the request's
artifact directory.  ``dry_run_collect`` does nothing and always succeeds;
useful for tests and for exercising schedules without side effects.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

from cluster_collector.collector.dispatcher import CollectFn, CollectJob, artifact_dir
from cluster_collector.models import CollectionKind

TIMESTAMP_FORMAT = "%Y-%m-%d:%H:%M:%S"


def record_collection(job: CollectJob) -> None:
    """Write ``<storage>/<kind>/<name>/<timestamp>.json`` for this run."""
    if job.cancelled.is_set():
        return

    collected_at = datetime.now(tz=UTC)
    directory = artifact_dir(job.storage, job.kind, job.request_name)
    directory.mkdir(parents=True, exist_ok=True)

    record = {
        "request": job.request_name,
        "kind": str(job.kind),
        "collected_at": collected_at.isoformat(),
        "params": job.params,
    }
    path = directory / f"{collected_at.strftime(TIMESTAMP_FORMAT)}.json"
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(record, sort_keys=True, indent=2), encoding="utf-8")
    tmp_path.replace(path)


def dry_run_collect(job: CollectJob) -> None:
    return None


DEFAULT_COLLECT_FNS: dict[CollectionKind, CollectFn] = {
    CollectionKind.SNAPSHOT: record_collection,
    CollectionKind.TECHSUPPORT: record_collection,
}
