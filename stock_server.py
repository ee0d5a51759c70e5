"""Local JSON API over the staging and sync engine.

Screens (or the serial scanner agent) talk to this app; every route maps to
one named engine operation. The store handle, credential store and client
factory are handed in by the caller of ``create_app``.
"""
import logging
import sqlite3
import sys
from typing import Any, Callable, Dict, Optional

from flask import Flask, jsonify, request

import stock_config as cfg
import stock_store as ss
from stock_client import SyncClient
from stock_commit import commit_session
from stock_credentials import CredentialStore
from stock_download import CatalogDownloader, DownloadState
from stock_errors import (
    AuthError,
    DownloadInProgressError,
    DuplicateError,
    NetworkError,
    NotFoundError,
    PartialCommitError,
    PayloadError,
    SchemaError,
    StoreError,
    SyncError,
    ValidationError,
)
from stock_resolver import search_products
from stock_staging import StagingSession
from stock_upload import sync_pending_orders

_ERROR_STATUS = (
    (ValidationError, 400),
    (AuthError, 401),
    (NotFoundError, 404),
    (DuplicateError, 409),
    (DownloadInProgressError, 409),
    (PayloadError, 502),
    (NetworkError, 502),
    (StoreError, 500),
)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


class EngineContext:
    """Per-app wiring: one store handle, one entry session, one downloader."""

    def __init__(self, conn: sqlite3.Connection, credentials: CredentialStore,
                 client_factory: Callable[[], Any], sleep: Optional[Callable[[float], None]] = None):
        self.conn = conn
        self.credentials = credentials
        self.client_factory = client_factory
        self.session = StagingSession(conn)
        kwargs = {'sleep': sleep} if sleep else {}
        self.downloader = CatalogDownloader(conn, None, credentials, **kwargs)


def create_app(conn: sqlite3.Connection, credentials: CredentialStore,
               client_factory: Optional[Callable[[], Any]] = None,
               sleep: Optional[Callable[[float], None]] = None) -> Flask:
    app = Flask(__name__)
    app.logger.setLevel(cfg.LOG_LEVEL)
    if client_factory is None:
        def client_factory():
            return SyncClient.from_credentials(credentials)
    ctx = EngineContext(conn, credentials, client_factory, sleep=sleep)
    app.extensions['stock_engine'] = ctx

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _pending_payload() -> Dict[str, Any]:
        return {'items': ctx.session.items, 'totals': ctx.session.totals()}

    @app.errorhandler(SyncError)
    def handle_sync_error(exc: SyncError):
        status = 500
        for cls, code in _ERROR_STATUS:
            if isinstance(exc, cls):
                status = code
                break
        payload: Dict[str, Any] = {'status': 'error', 'error': type(exc).__name__, 'message': str(exc)}
        if isinstance(exc, ValidationError) and exc.items:
            payload['items'] = exc.items
        if isinstance(exc, DuplicateError) and exc.existing:
            payload['existing'] = exc.existing
        if status >= 500:
            app.logger.warning('%s %s failed: %s', request.method, request.path, exc)
        return jsonify(payload), status

    @app.after_request
    def add_no_cache_headers(response):
        response.headers['Cache-Control'] = 'no-store'
        return response

    @app.route('/api/health')
    def api_health():
        return jsonify({'status': 'success', 'schema_version': ss.schema_version(ctx.conn)})

    @app.route('/api/stats')
    def api_stats():
        stats = ss.local_data_stats(ctx.conn)
        stats['supplier_code'] = ctx.session.supplier_code
        return jsonify({'status': 'success', 'stats': stats})

    @app.route('/api/suppliers')
    def api_suppliers():
        query = (request.args.get('q') or '').strip()
        rows = ss.search_suppliers(ctx.conn, query) if query else ss.fetch_suppliers(ctx.conn)
        return jsonify({'status': 'success', 'suppliers': rows})

    @app.route('/api/session/supplier', methods=['POST'])
    def api_session_supplier():
        """Select the supplier the next staged items belong to (null clears it)."""
        code = _body().get('code')
        code = str(code).strip() if code is not None else ''
        if code:
            known = {row['code'] for row in ss.fetch_suppliers(ctx.conn)}
            if code not in known:
                raise NotFoundError(f'Unknown supplier {code}')
        ctx.session.supplier_code = code or None
        return jsonify({'status': 'success', 'supplier_code': ctx.session.supplier_code})

    @app.route('/api/pending')
    def api_pending():
        ctx.session.reload()
        return jsonify({'status': 'success', **_pending_payload()})

    @app.route('/api/scan', methods=['POST'])
    def api_scan():
        code = str(_body().get('code') or '').strip()
        try:
            outcome = ctx.session.scan(code)
        except NotFoundError as exc:
            return jsonify({'status': 'error', 'error': 'NotFoundError', 'message': str(exc),
                            'code': code, 'allow_manual': True}), 404
        if isinstance(outcome, list):
            return jsonify({'status': 'choose', 'code': code, 'candidates': outcome})
        app.logger.info('Scanned %s -> pending item %s', code, outcome['id'])
        return jsonify({'status': 'success', 'staged': outcome, **_pending_payload()})

    @app.route('/api/products/search')
    def api_product_search():
        rows = search_products(ctx.conn, request.args.get('q') or '', limit=request.args.get('limit', 50, type=int))
        return jsonify({'status': 'success', 'products': rows})

    @app.route('/api/pending', methods=['POST'])
    def api_pending_add():
        """Stage a catalog product chosen from candidates or search results."""
        barcode = str(_body().get('barcode') or '').strip()
        if not barcode:
            raise ValidationError('Missing barcode')
        product = ss.get_product_by_barcode(ctx.conn, barcode)
        if not product:
            raise NotFoundError(f'Barcode {barcode} is not in the product catalog')
        item = ctx.session.add_resolved(product)
        return jsonify({'status': 'success', 'staged': item, **_pending_payload()}), 201

    @app.route('/api/pending/manual', methods=['POST'])
    def api_pending_manual():
        data = _body()
        item = ctx.session.add_manual(
            data.get('barcode'), data.get('name'), data.get('mrp'), data.get('cost'), data.get('quantity'),
        )
        return jsonify({'status': 'success', 'staged': item, **_pending_payload()}), 201

    @app.route('/api/pending/<int:item_id>', methods=['PATCH'])
    def api_pending_edit(item_id: int):
        data = _body()
        changes = {}
        if 'quantity' in data:
            changes['quantity'] = data['quantity']
        for key in ('edited_cost', 'eCost'):
            if key in data:
                changes['edited_cost'] = data[key]
        for key in ('batch_supplier', 'batchSupplier'):
            if key in data:
                changes['batch_supplier'] = data[key]
        if not changes:
            raise ValidationError('Nothing to update (quantity, edited_cost, batch_supplier)')
        item = ctx.session.edit(item_id, **changes)
        return jsonify({'status': 'success', 'item': item, **_pending_payload()})

    @app.route('/api/pending/<int:item_id>', methods=['DELETE'])
    def api_pending_delete(item_id: int):
        ctx.session.remove(item_id)
        return jsonify({'status': 'success', **_pending_payload()})

    @app.route('/api/commit', methods=['POST'])
    def api_commit():
        data = _body()
        user_id = ctx.credentials.user_id() or data.get('user_id')
        result = commit_session(ctx.conn, ctx.session, user_id,
                                allow_incomplete=_as_bool(data.get('allow_incomplete')))
        try:
            result.raise_for_errors()
        except PartialCommitError as exc:
            return jsonify({'status': 'partial', 'message': str(exc), 'result': result.to_dict(),
                            **_pending_payload()}), 207
        return jsonify({'status': 'success', 'result': result.to_dict(), **_pending_payload()})

    @app.route('/api/orders/pending')
    def api_orders_pending():
        orders = ss.get_pending_orders(ctx.conn)
        return jsonify({'status': 'success', 'orders': orders, 'count': len(orders)})

    @app.route('/api/upload', methods=['POST'])
    def api_upload():
        orders = ss.get_pending_orders(ctx.conn)
        if not orders:
            return jsonify({'status': 'success', 'message': 'Nothing to upload', 'uploaded_count': 0})
        client = ctx.client_factory()
        try:
            result = sync_pending_orders(ctx.conn, client, ctx.credentials,
                                         delete=_as_bool(_body().get('delete')), orders=orders)
        finally:
            client.close()
        return jsonify({'status': 'success', **result.to_dict()})

    @app.route('/api/download', methods=['POST'])
    def api_download():
        retries = _body().get('max_retries')
        if retries is None:
            retries = cfg.DOWNLOAD_RETRIES
        if isinstance(retries, bool):
            raise ValidationError('max_retries must be a whole number')
        try:
            retries = int(retries)
        except (TypeError, ValueError):
            raise ValidationError('max_retries must be a whole number')
        if retries < 1:
            raise ValidationError('max_retries must be at least 1')
        if ctx.downloader.state == DownloadState.IN_PROGRESS:
            raise DownloadInProgressError('A catalog download is already running')
        ctx.downloader.client = ctx.client_factory()
        try:
            result = ctx.downloader.download_with_retry(max_retries=retries)
        finally:
            ctx.downloader.client.close()
            ctx.downloader.client = None
        return jsonify({'status': 'success', 'download': result.summary(),
                        'state': ctx.downloader.status()})

    @app.route('/api/download/status')
    def api_download_status():
        return jsonify({'status': 'success', 'state': ctx.downloader.status(),
                        'last_synced': ss.get_last_synced(ctx.conn)})

    @app.route('/api/download/reset', methods=['POST'])
    def api_download_reset():
        ctx.downloader.reset()
        return jsonify({'status': 'success', 'state': ctx.downloader.status()})

    return app


def build_app(db_path: str = cfg.DB_PATH, credentials_path: str = cfg.CREDENTIALS_PATH) -> Flask:
    """Open the store once, migrate it, and wire the API around that handle."""
    conn = ss.connect(db_path)
    ss.init_db(conn)
    return create_app(conn, CredentialStore(credentials_path))


if __name__ == '__main__':
    cfg.configure_logging('stock-api')
    try:
        application = build_app()
    except (SchemaError, StoreError) as exc:
        logging.getLogger(__name__).error('Local store unavailable: %s', exc)
        sys.exit(1)
    application.run(host=cfg.API_HOST, port=cfg.API_PORT, debug=False, threaded=False)
