from flask import Flask, request, jsonify
from dotenv import load_dotenv
import os
import threading
import logging
from typing import Any, Dict, List, Optional

import pdv_service as ps
import sync_worker
from backend_client import BackendClient
from pdv_cart import PDVCart
from pdv_loaders import ProductLoader, PromotionLoader, SessionLoader
from sale_finalizer import SaleFinalizer, SaleValidationError
from terminal_context import TerminalContext

# Load environment variables
load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_flag(name: str, default: str = '0') -> bool:
    return (_env_string(name, default) or default) == '1'


app = Flask(__name__)

_LOG_LEVEL_NAME = (os.getenv('PDV_LOG_LEVEL') or 'INFO').strip().upper()
app.logger.setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))
logging.getLogger('werkzeug').setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))

# Terminal identity and behavior flags
PDV_DB_PATH = _env_string('PDV_DB_PATH', 'pdv.db')
PDV_COMPANY_ID = _env_string('PDV_COMPANY_ID')
PDV_USER_ID = _env_string('PDV_USER_ID')
PDV_TERMINAL_ID = _env_string('PDV_TERMINAL_ID', '01')
PDV_TRAINING_MODE = _env_flag('PDV_TRAINING_MODE')
# Force local queue-only mode even when backend creds exist.
PDV_QUEUE_ONLY = _env_flag('PDV_QUEUE_ONLY')
# Native (desktop) builds keep a local SQLite copy of the catalog.
PDV_LOCAL_DB = _env_flag('PDV_LOCAL_DB', '1')
try:
    PDV_PRODUCT_LIMIT = int(_env_string('PDV_PRODUCT_LIMIT', '1000'))
except ValueError:
    PDV_PRODUCT_LIMIT = 1000

_TERMINAL_LOCK = threading.RLock()
_NOTICES: List[Dict[str, str]] = []
_TERMINAL: Dict[str, Any] = {}


def _collect_notice(level: str, message: str) -> None:
    """Cart notices are returned with the next response and logged."""
    _NOTICES.append({'level': level, 'message': message})
    if level in ('warning', 'error'):
        app.logger.warning(message)
    else:
        app.logger.info(message)


def _drain_notices() -> List[Dict[str, str]]:
    notices = list(_NOTICES)
    del _NOTICES[:]
    return notices


def configure_terminal(ctx: Optional[TerminalContext] = None, client: Any = None,
                       conn: Any = None) -> Dict[str, Any]:
    """(Re)build the terminal state. Tests pass their own context/client/conn."""
    with _TERMINAL_LOCK:
        old_ctx = _TERMINAL.get('ctx')
        if old_ctx is not None:
            old_ctx.cancel_loads()
        ctx = ctx or TerminalContext(
            company_id=PDV_COMPANY_ID,
            user_id=PDV_USER_ID,
            terminal_id=PDV_TERMINAL_ID,
            training_mode=PDV_TRAINING_MODE,
            queue_only=PDV_QUEUE_ONLY,
            local_db_enabled=PDV_LOCAL_DB,
        )
        client = client if client is not None else BackendClient()
        conn = conn if conn is not None else ps.connect(PDV_DB_PATH)
        cart = PDVCart(notify=_collect_notice)
        del _NOTICES[:]
        _TERMINAL.clear()
        _TERMINAL.update({
            'ctx': ctx,
            'client': client,
            'conn': conn,
            'cart': cart,
            'session': None,
            'finalizer': SaleFinalizer(ctx, cart, client=client, conn=conn),
            'products': ProductLoader(ctx, client, conn, on_result=cart.set_products, limit=PDV_PRODUCT_LIMIT),
            'promotions': PromotionLoader(ctx, client, conn, on_result=cart.set_promotions),
            'sessions': SessionLoader(ctx, client, conn, on_result=lambda s: _TERMINAL.__setitem__('session', s)),
        })
        return _TERMINAL


def _terminal() -> Dict[str, Any]:
    with _TERMINAL_LOCK:
        if not _TERMINAL:
            configure_terminal()
        return _TERMINAL


def _ensure_catalog(state: Dict[str, Any]) -> None:
    ctx = state['ctx']
    if not state['cart'].products:
        state['products'].load(ctx.company_id)
        state['promotions'].load(ctx.company_id)


def _cart_response(state: Dict[str, Any], ok: bool = True, **extra):
    payload = {'status': 'success' if ok else 'error', 'cart': state['cart'].to_dict(), 'notices': _drain_notices()}
    payload.update(extra)
    return jsonify(payload)


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


@app.route('/health')
def health():
    return jsonify({'status': 'ok'})


@app.route('/api/cart')
def api_get_cart():
    state = _terminal()
    with _TERMINAL_LOCK:
        return _cart_response(state)


@app.route('/api/cart/add', methods=['POST'])
def api_cart_add():
    data = _json_body()
    product_id = data.get('product_id')
    if not product_id:
        return jsonify({'status': 'error', 'message': 'product_id is required'}), 400
    state = _terminal()
    with _TERMINAL_LOCK:
        _ensure_catalog(state)
        cart = state['cart']
        product = cart.find_product(str(product_id))
        if not product:
            return jsonify({'status': 'error', 'message': f'Produto nao encontrado: {product_id}'}), 404
        ok = cart.add_to_cart(product)
        return _cart_response(state, ok)


@app.route('/api/cart/quantity', methods=['POST'])
def api_cart_quantity():
    data = _json_body()
    product_id = data.get('product_id')
    try:
        delta = float(data.get('delta'))
    except (TypeError, ValueError):
        return jsonify({'status': 'error', 'message': 'delta must be a number'}), 400
    if not product_id:
        return jsonify({'status': 'error', 'message': 'product_id is required'}), 400
    state = _terminal()
    with _TERMINAL_LOCK:
        state['cart'].update_quantity(product_id, delta)
        return _cart_response(state)


@app.route('/api/cart/remove', methods=['POST'])
def api_cart_remove():
    product_id = _json_body().get('product_id')
    if not product_id:
        return jsonify({'status': 'error', 'message': 'product_id is required'}), 400
    state = _terminal()
    with _TERMINAL_LOCK:
        state['cart'].remove_item(product_id)
        return _cart_response(state)


@app.route('/api/cart/clear', methods=['POST'])
def api_cart_clear():
    state = _terminal()
    with _TERMINAL_LOCK:
        state['cart'].clear_cart()
        return _cart_response(state)


@app.route('/api/cart/discount', methods=['POST'])
def api_cart_discount():
    """Body: {'percent': 10} for the whole sale, or {'product_id': 'p1', 'percent': 5} per line."""
    data = _json_body()
    try:
        percent = float(data.get('percent'))
    except (TypeError, ValueError):
        return jsonify({'status': 'error', 'message': 'percent must be a number'}), 400
    state = _terminal()
    with _TERMINAL_LOCK:
        if data.get('product_id'):
            state['cart'].set_item_discount(data['product_id'], percent)
        else:
            state['cart'].set_global_discount(percent)
        return _cart_response(state)


@app.route('/api/cart/repeat-last', methods=['POST'])
def api_cart_repeat_last():
    state = _terminal()
    with _TERMINAL_LOCK:
        ok = state['cart'].repeat_last_sale()
        if not ok:
            return jsonify({'status': 'error', 'message': 'Nenhuma venda anterior'}), 404
        return _cart_response(state)


@app.route('/api/scan', methods=['POST'])
def api_scan():
    barcode = (_json_body().get('barcode') or '').strip()
    if not barcode:
        return jsonify({'status': 'error', 'message': 'barcode is required'}), 400
    state = _terminal()
    with _TERMINAL_LOCK:
        _ensure_catalog(state)
        ok = state['cart'].handle_barcode_scan(barcode)
        return _cart_response(state, ok)


@app.route('/api/checkout', methods=['POST'])
def api_checkout():
    """Body: {'payments': [{'method': 'dinheiro', 'amount': 30.0, 'approved': true}, ...]}"""
    data = _json_body()
    payments = data.get('payments') or []
    if not isinstance(payments, list):
        return jsonify({'status': 'error', 'message': 'payments must be a list'}), 400
    state = _terminal()
    with _TERMINAL_LOCK:
        if state.get('session') is None:
            ctx = state['ctx']
            state['sessions'].load(ctx.company_id, ctx.terminal_id)
        try:
            receipt = state['finalizer'].finalize(payments, session=state.get('session'))
        except SaleValidationError as exc:
            return jsonify({'status': 'error', 'message': str(exc)}), 400
        except Exception:
            app.logger.exception('Checkout could not be recorded')
            return jsonify({'status': 'error', 'message': 'Unable to record sale'}), 500
        return _cart_response(state, True, receipt=receipt)


@app.route('/api/connectivity', methods=['POST'])
def api_connectivity():
    """The front-end reports browser online/offline transitions here."""
    online = bool(_json_body().get('online'))
    state = _terminal()
    with _TERMINAL_LOCK:
        state['ctx'].online = online
    app.logger.info('Terminal is now %s', 'online' if online else 'offline')
    return jsonify({'status': 'success', 'online': online})


@app.route('/api/products')
def api_products():
    state = _terminal()
    with _TERMINAL_LOCK:
        ctx = state['ctx']
        if request.args.get('refresh') == '1':
            ctx.cache_clear('products')
            ctx.cache_clear('promotions')
            state['products'].load(ctx.company_id)
            state['promotions'].load(ctx.company_id)
        else:
            _ensure_catalog(state)
        return jsonify({
            'status': 'success',
            'products': state['cart'].products,
            'promotions': len(state['cart'].promotions),
            'source': state['products'].last_source,
        })


@app.route('/api/session')
def api_session():
    state = _terminal()
    with _TERMINAL_LOCK:
        ctx = state['ctx']
        session = state['sessions'].load(ctx.company_id, ctx.terminal_id)
        return jsonify({'status': 'success', 'session': session, 'source': state['sessions'].last_source})


@app.route('/api/sync/status')
def api_sync_status():
    """Queue counts by status plus the last successful push."""
    state = _terminal()
    conn = state['conn']
    return jsonify({
        'status': 'success',
        'counts': ps.queue_stats(conn),
        'last_cloud_sync': ps.get_meta(conn, 'last_cloud_sync'),
        'online': state['ctx'].online,
    })


@app.route('/api/sync/push', methods=['POST'])
def api_sync_push():
    state = _terminal()
    ctx = state['ctx']
    if not ctx.can_reach_backend():
        return jsonify({'status': 'error', 'message': 'Terminal offline or queue-only'}), 409
    try:
        result = sync_worker.push_pending(state['conn'], state['client'])
    except Exception:
        app.logger.exception('Manual sync push failed')
        return jsonify({'status': 'error', 'message': 'Sync failed'}), 502
    return jsonify({'status': 'success', 'result': result, 'counts': ps.queue_stats(state['conn'])})
