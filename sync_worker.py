#!/usr/bin/env python3
"""
Stock entry sync worker

Commands:
  - init:     create or migrate the local store
  - download: pull the supplier and product catalogs (with retry/backoff)
  - upload:   post pending orders once, then mark them synced (or delete them)
  - status:   print local counts, pending orders and the last catalog sync

Env vars:
  STOCK_DB_PATH            SQLite DB path (default: stock.db)
  STOCK_CREDENTIALS_PATH   credential file with token / user_id / paired_ip (default: credentials.json)
  STOCK_DOWNLOAD_RETRIES   attempts per download (default: 3)

Run:
  python sync_worker.py download --interval 600
"""
import argparse
import json
import logging
import sqlite3
import sys
import time
from typing import Callable, List, Optional

import stock_config as cfg
import stock_store as ss
from stock_client import SyncClient
from stock_credentials import CredentialStore
from stock_download import CatalogDownloader
from stock_errors import AuthError, SchemaError, StoreError, SyncError
from stock_upload import sync_pending_orders

logger = logging.getLogger('sync')


def cmd_init(conn: sqlite3.Connection, args, credentials: CredentialStore) -> int:
    # main() has already migrated the store
    logger.info('Local store ready at schema version %d (%s)', ss.schema_version(conn), args.db)
    return 0


def cmd_status(conn: sqlite3.Connection, args, credentials: CredentialStore) -> int:
    stats = ss.local_data_stats(conn)
    stats['paired_host'] = credentials.paired_host()
    stats['logged_in'] = bool(credentials.token())
    print(json.dumps(stats, indent=2))
    return 0


def cmd_upload(conn: sqlite3.Connection, args, credentials: CredentialStore,
               client_factory: Callable = SyncClient.from_credentials) -> int:
    orders = ss.get_pending_orders(conn)
    if not orders:
        logger.info('No pending orders to upload')
        return 0
    client = client_factory(credentials)
    try:
        result = sync_pending_orders(conn, client, credentials, delete=args.delete, orders=orders)
    finally:
        client.close()
    logger.info('%s: %d uploaded, %d marked', result.message, result.uploaded_count, result.marked_count)
    return 0


def cmd_download(conn: sqlite3.Connection, args, credentials: CredentialStore,
                 client_factory: Callable = SyncClient.from_credentials,
                 sleep: Callable[[float], None] = time.sleep) -> int:
    client = client_factory(credentials)
    downloader = CatalogDownloader(conn, client, credentials, sleep=sleep)
    try:
        while True:
            try:
                result = downloader.download_with_retry(max_retries=args.retries)
                logger.info('Catalog refreshed: %s', result.summary())
            except AuthError:
                raise
            except SyncError as exc:
                if not args.interval:
                    raise
                logger.warning('Download failed, next try in %ss: %s', args.interval, exc)
            if not args.interval:
                return 0
            downloader.reset()
            sleep(args.interval)
    finally:
        client.close()


COMMANDS = {
    'init': cmd_init,
    'download': cmd_download,
    'upload': cmd_upload,
    'status': cmd_status,
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description='Stock entry sync worker')
    ap.add_argument('command', choices=sorted(COMMANDS), help='What to run')
    ap.add_argument('--db', default=cfg.DB_PATH, help='Path to SQLite DB')
    ap.add_argument('--credentials', default=cfg.CREDENTIALS_PATH, help='Path to the credential file')
    ap.add_argument('--retries', type=int, default=cfg.DOWNLOAD_RETRIES, help='Download attempts per run')
    ap.add_argument('--interval', type=float, default=0,
                    help='Repeat downloads every N seconds (download only; 0 runs once)')
    ap.add_argument('--delete', action='store_true', help='Delete uploaded orders instead of marking them synced')
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg.configure_logging('sync')
    try:
        conn = ss.connect(args.db)
        ss.init_db(conn)
    except (SchemaError, StoreError) as exc:
        logger.error('Local store unavailable: %s', exc)
        return 2
    credentials = CredentialStore(args.credentials)
    try:
        return COMMANDS[args.command](conn, args, credentials)
    except SyncError as exc:
        logger.error('%s failed: %s', args.command, exc)
        return 1
    except KeyboardInterrupt:
        logger.info('Exiting on Ctrl+C')
        return 130
    finally:
        conn.close()


if __name__ == '__main__':
    sys.exit(main())
