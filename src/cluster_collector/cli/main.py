"""cluster-collector command-line interface.

Commands:
    run         Run the reconciliation controller
    apply       Create or update collection requests in the local store
    delete      Delete a collection request from the local store
    validate    Validate a requests file and/or target catalog
    next-run    Preview the firing times of a cron schedule
    match       Show the targets a label selector matches
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import UTC, datetime
from typing import Any

import click

from cluster_collector import __version__
from cluster_collector.collector.dispatcher import CollectFn, Collector
from cluster_collector.collector.jobs import DEFAULT_COLLECT_FNS, dry_run_collect
from cluster_collector.config import CollectorConfig, ConfigError, load_config
from cluster_collector.controller.manager import Controller
from cluster_collector.controller.reconciler import Reconciler
from cluster_collector.index.reverse_index import ReverseIndex
from cluster_collector.models import CollectionKind, ObjectKey, Target
from cluster_collector.scheduling.scheduler import SchedulingError, next_run_after, parse_schedule
from cluster_collector.store.object_store import (
    ConflictError,
    NotFoundError,
    LocalObjectStore,
    ObjectStore,
    StoreError,
    load_requests,
)
from cluster_collector.targets.catalog import (
    CatalogError,
    LocalTargetCatalog,
    TargetCatalog,
    load_catalog,
)
from cluster_collector.targets.matcher import TargetMatcher
from cluster_collector.targets.selector import (
    SelectorError,
    compile_selector,
    parse_selector_string,
)

logger = logging.getLogger(__name__)

# --- Defaults ---

DEFAULT_CATALOG = "./targets.yaml"
DEFAULT_STORE = "./requests.json"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _resolve_cfg(path: str | None = None) -> CollectorConfig:
    """Load config (explicit path, else auto-discover).

    An explicit path that fails to load is fatal; auto-discovery failures
    fall back to defaults.
    """
    if path is not None:
        try:
            return load_config(path)
        except (OSError, ValueError, ConfigError) as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    try:
        return load_config()
    except Exception:
        return CollectorConfig()


def _or(explicit: str | None, cfg_val: str | None, fallback: str) -> str:
    """Return first non-None value: explicit CLI flag > config > fallback."""
    return explicit or cfg_val or fallback


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _list_targets(catalog: TargetCatalog, matcher: TargetMatcher) -> list[Target]:
    targets: list[Target] = []
    for kind in matcher.kinds:
        targets.extend(catalog.list(kind))
    return targets


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """cluster-collector: scheduled snapshot and techsupport collection."""


# --- run command ---


def _build_backend(
    cfg: CollectorConfig, catalog_path: str, store_path: str,
) -> tuple[TargetCatalog, ObjectStore]:
    if cfg.backend == "kubernetes":
        from cluster_collector.store.k8s import KubernetesObjectStore, KubernetesTargetCatalog

        return (
            KubernetesTargetCatalog(cfg.kubeconfig, cfg.context, cfg.in_cluster),
            KubernetesObjectStore(cfg.kubeconfig, cfg.context, cfg.in_cluster),
        )
    return load_catalog(catalog_path), LocalObjectStore(store_path)


@cli.command()
@click.option("--config", "config_path", default=None, help="Path to cluster-collector.yaml")
@click.option("--catalog", default=None, help="Path to target catalog YAML (local backend)")
@click.option("--store", default=None, help="Path to request store JSON (local backend)")
@click.option("--workers", type=int, default=None, help="Collector worker threads")
@click.option("--log-level", default=None, help="Logging level (DEBUG, INFO, ...)")
@click.option("--dry-run", is_flag=True, help="Schedule without collecting artifacts")
@click.option("--once", is_flag=True, help="Reconcile every request once and exit")
def run(
    config_path: str | None,
    catalog: str | None,
    store: str | None,
    workers: int | None,
    log_level: str | None,
    dry_run: bool,
    once: bool,
) -> None:
    """Run the reconciliation controller until interrupted."""
    cfg = _resolve_cfg(config_path)
    _configure_logging(log_level or cfg.log_level)

    catalog_path = _or(catalog, cfg.catalog, DEFAULT_CATALOG)
    store_path = _or(store, cfg.store, DEFAULT_STORE)
    try:
        target_catalog, object_store = _build_backend(cfg, catalog_path, store_path)
    except (CatalogError, StoreError, ImportError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    collect_fns: dict[CollectionKind, CollectFn] = (
        {kind: dry_run_collect for kind in CollectionKind} if dry_run else DEFAULT_COLLECT_FNS
    )

    index = ReverseIndex()
    matcher = TargetMatcher(target_catalog)
    collector = Collector(workers=workers or cfg.workers)
    reconciler = Reconciler(object_store, matcher, index, collector, collect_fns)
    controller = Controller(
        reconciler, index, max_concurrent_reconciles=cfg.max_concurrent_reconciles,
    )
    if isinstance(object_store, LocalObjectStore):
        object_store.watch(controller.on_store_change)

    try:
        controller.enqueue_all(r.key for r in object_store.list())
        if once:
            while controller.process_next(timeout=0):
                pass
            return
        _run_forever(cfg, controller, object_store, target_catalog, matcher, catalog_path)
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        collector.shutdown()


def _run_forever(
    cfg: CollectorConfig,
    controller: Controller,
    object_store: ObjectStore,
    target_catalog: TargetCatalog,
    matcher: TargetMatcher,
    catalog_path: str,
) -> None:
    """Start workers and resync every ``cfg.resync_seconds`` until Ctrl-C."""
    stop = threading.Event()
    previous = _list_targets(target_catalog, matcher)
    controller.start()
    logger.info("controller running (%s backend)", cfg.backend)
    try:
        while not stop.wait(cfg.resync_seconds):
            if isinstance(target_catalog, LocalTargetCatalog):
                try:
                    target_catalog.replace(load_catalog(catalog_path).targets)
                except CatalogError:
                    logger.exception("failed to reload target catalog")
            try:
                current = _list_targets(target_catalog, matcher)
                controller.on_catalog_change(previous, current)
                previous = current
                controller.enqueue_all(r.key for r in object_store.list())
            except (CatalogError, StoreError):
                logger.exception("resync failed")
    except KeyboardInterrupt:
        logger.info("interrupted, shutting down")
    finally:
        controller.stop()


# --- apply / delete commands ---


@cli.command()
@click.argument("requests_file")
@click.option("--store", default=None, help="Path to request store JSON")
def apply(requests_file: str, store: str | None) -> None:
    """Create or update collection requests from a YAML file."""
    cfg = _resolve_cfg()
    store_path = _or(store, cfg.store, DEFAULT_STORE)
    try:
        requests = load_requests(requests_file)
        object_store = LocalObjectStore(store_path)
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    for request in requests:
        try:
            current = object_store.get(request.key)
        except NotFoundError:
            object_store.create(request)
            click.echo(f"{request.key} created")
            continue

        current.spec = request.spec
        current.metadata.labels = request.metadata.labels
        try:
            updated = object_store.update(current)
        except ConflictError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        changed = updated.metadata.generation != current.metadata.generation
        click.echo(f"{request.key} {'configured' if changed else 'unchanged'}")


@cli.command()
@click.argument("kind", type=click.Choice([k.value for k in CollectionKind], case_sensitive=False))
@click.argument("name")
@click.option("--store", default=None, help="Path to request store JSON")
def delete(kind: str, name: str, store: str | None) -> None:
    """Delete a collection request (finalized by the next reconcile)."""
    cfg = _resolve_cfg()
    store_path = _or(store, cfg.store, DEFAULT_STORE)
    kind_value = next(k for k in CollectionKind if k.value.lower() == kind.lower())
    key = ObjectKey(kind=kind_value, name=name)
    try:
        LocalObjectStore(store_path).delete(key)
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"{key} deleted")


# --- validate command ---


@cli.command()
@click.option("--requests", "requests_file", default=None, help="Path to requests YAML file")
@click.option("--catalog", default=None, help="Path to target catalog YAML file")
def validate(requests_file: str | None, catalog: str | None) -> None:
    """Validate a requests file and/or target catalog."""
    cfg = _resolve_cfg()
    catalog = catalog or cfg.catalog

    errors: list[str] = []
    ok_count = 0

    if requests_file:
        now = datetime.now(tz=UTC)
        try:
            requests = load_requests(requests_file, now=now)
        except StoreError as e:
            requests = []
            errors.append(f"requests: {e}")
            click.echo(click.style("FAIL", fg="red") + f"  requests: {e}")
        for request in requests:
            try:
                parse_schedule(request.spec.schedule, now)
                if request.spec.cluster_selector is not None:
                    compile_selector(request.spec.cluster_selector)
            except (SchedulingError, SelectorError) as e:
                errors.append(f"{request.key}: {e}")
                click.echo(click.style("FAIL", fg="red") + f"  {request.key}: {e}")
                continue
            click.echo(click.style("OK", fg="green") + f"  {request.key}")
            ok_count += 1

    if catalog:
        try:
            cat = load_catalog(catalog)
            click.echo(
                click.style("OK", fg="green")
                + f"  catalog: {len(cat)} target(s) loaded"
            )
            ok_count += 1
        except CatalogError as e:
            errors.append(f"catalog: {e}")
            click.echo(click.style("FAIL", fg="red") + f"  catalog: {e}")

    if errors:
        click.echo(f"\n{len(errors)} error(s) found.")
        sys.exit(1)
    elif ok_count > 0:
        click.echo(f"\nAll {ok_count} item(s) valid.")
    else:
        click.echo("Nothing to validate.")


# --- next-run command ---


@cli.command("next-run")
@click.argument("schedule")
@click.option("--after", default=None, help="ISO-8601 start time (default: now, UTC)")
@click.option("--count", default=5, help="Number of firing times to show")
@click.option(
    "--deadline", type=int, default=None,
    help="Starting deadline in seconds (checks the missed-run ceiling from --since)",
)
@click.option("--since", default=None, help="ISO-8601 last run time for the missed-run check")
def next_run(
    schedule: str,
    after: str | None,
    count: int,
    deadline: int | None,
    since: str | None,
) -> None:
    """Preview the next firing times of a cron SCHEDULE."""
    try:
        start = _parse_time(after) if after else datetime.now(tz=UTC)
        if since is not None:
            first = next_run_after(schedule, _parse_time(since), deadline, start)
        else:
            first = parse_schedule(schedule, start).get_next(datetime)
        walker = parse_schedule(schedule, first)
    except (SchedulingError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(first.isoformat())
    for _ in range(count - 1):
        click.echo(walker.get_next(datetime).isoformat())


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# --- match command ---


@cli.command()
@click.argument("selector")
@click.option("--catalog", default=None, help="Path to target catalog YAML file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def match(selector: str, catalog: str | None, json_output: bool) -> None:
    """Show the targets a label SELECTOR matches (e.g. 'env=prod,tier in (web)')."""
    cfg = _resolve_cfg()
    catalog = _or(catalog, cfg.catalog, DEFAULT_CATALOG)
    try:
        label_selector = parse_selector_string(selector)
        refs = TargetMatcher(load_catalog(catalog)).match(label_selector)
    except (SelectorError, CatalogError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        data: list[dict[str, Any]] = [r.model_dump(mode="json", by_alias=True) for r in refs]
        click.echo(json.dumps(data, indent=2))
        return

    if not refs:
        click.echo("No matching targets.")
        return
    for ref in refs:
        click.echo(f"  {ref.kind:<16} {ref.namespace}/{ref.name}")
    click.echo(f"\n{len(refs)} target(s) matched.")


if __name__ == "__main__":
    cli()
