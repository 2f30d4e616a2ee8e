"""
Process entry point.

    mxexport run                 watch the configured collection and export
    mxexport reset-checkpoint    forget the saved resume token
"""
from __future__ import annotations
import argparse
import sys

from prometheus_client import start_http_server

from .config.settings import Settings, get_settings
from .connectors.cdc import CDCConfig, CDCError, ChangeStreamWatcher, CheckpointError, CheckpointStore
from .exporter import Exporter
from .mongodb import connection as mongo_conn
from .sinks import build_connector
from .utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def cmd_run(settings: Settings, args) -> int:
    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("Serving metrics", extra={"port": settings.metrics_port})

    target = settings.sink_target()
    client = mongo_conn.get_client(settings.mongo)
    connector = build_connector(settings)
    store = CheckpointStore(settings.database.connection_url)
    try:
        mongo_conn.health(client)
        db = mongo_conn.fetch_database(client, settings.mongo.database)
        collection = mongo_conn.fetch_collection(db, settings.mongo.collection)

        watcher = ChangeStreamWatcher(
            collection=collection,
            exporter=Exporter(target, connector),
            checkpoint_store=store,
            config=CDCConfig(
                max_retries=settings.watcher.max_retries,
                retry_backoff_base=settings.watcher.retry_backoff_base,
                max_retry_delay=settings.watcher.max_retry_delay,
                export_timeout=settings.watcher.export_timeout,
                full_document=settings.mongo.full_document,
                skip_malformed=settings.watcher.skip_malformed,
            ),
            job_id=settings.watcher.job_id,
        )
        logger.info(
            "Starting export",
            extra={
                "database": settings.mongo.database,
                "collection": settings.mongo.collection,
                "destination": settings.export_destination,
            }
        )
        watcher.start()
    finally:
        store.close()
        connector.close()
        client.close()
    return 0


def cmd_reset_checkpoint(settings: Settings, args) -> int:
    store = CheckpointStore(settings.database.connection_url)
    try:
        store.delete_checkpoint(settings.watcher.job_id, settings.mongo.collection)
    finally:
        store.close()
    return 0


def main(argv=None) -> int:
    p = argparse.ArgumentParser(prog="mxexport")
    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run", help="watch the collection and export change events")
    r.set_defaults(fn=cmd_run)

    c = sub.add_parser("reset-checkpoint", help="delete the saved resume token")
    c.set_defaults(fn=cmd_reset_checkpoint)

    args = p.parse_args(argv)

    configure_logging()
    try:
        settings = get_settings()
        configure_logging(settings.log_level)
        return args.fn(settings, args)
    except (ValueError, mongo_conn.MongoConnectionError, CheckpointError, CDCError) as e:
        logger.error(f"mxexport {args.cmd} failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
