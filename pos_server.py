from flask import Flask, request, jsonify
import logging
from typing import Any, Dict, Optional

from pos_config import load_settings, log_level
from pos_errors import UnknownEntityError
from pos_service import PosService, build_service

app = Flask(__name__)

_settings = load_settings()
app.logger.setLevel(log_level(_settings.log_level))
logging.getLogger('werkzeug').setLevel(log_level(_settings.log_level))


def _service() -> PosService:
    """Return the shared PosService, building it from the environment on first use."""
    svc = app.config.get('POS_SERVICE')
    if svc is None:
        svc = build_service(_settings)
        app.config['POS_SERVICE'] = svc
        app.logger.info("POS service ready (db=%s, authority=%s)",
                        _settings.db_path, svc.connection.config.base_url or '<none>')
    return svc


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _error(message: str, code: int):
    return jsonify({'status': 'error', 'message': message}), code


def _float_arg(data: Dict[str, Any], key: str) -> Optional[float]:
    raw = data.get(key)
    if raw is None or raw == '':
        return None
    return float(raw)


@app.route('/health')
def health():
    return jsonify({'status': 'ok'})


@app.route('/api/sync/status')
def api_sync_status():
    return jsonify({'status': 'success', 'sync': _service().get_sync_status().to_dict()})


@app.route('/api/sync', methods=['POST'])
def api_sync_now():
    """Push pending operations and pull a fresh snapshot, ignoring backoff."""
    svc = _service()
    result = svc.sync_now(force=True)
    return jsonify({'status': 'success', 'result': result.to_dict(), 'sync': svc.get_sync_status().to_dict()})


@app.route('/api/sync/pull', methods=['POST'])
def api_sync_pull():
    svc = _service()
    result = svc.refresh()
    return jsonify({'status': 'success', 'result': result.to_dict(), 'sync': svc.get_sync_status().to_dict()})


@app.route('/api/connection', methods=['POST'])
def api_configure_connection():
    data = _payload()
    url = str(data.get('apiUrl') or '').strip()
    if not url:
        return _error('Missing apiUrl', 400)
    svc = _service()
    online = svc.configure_connection(url, data.get('apiKey'))
    return jsonify({'status': 'success', 'online': online, 'sync': svc.get_sync_status().to_dict()})


@app.route('/api/operator', methods=['POST'])
def api_set_operator():
    data = _payload()
    name = str(data.get('name') or '').strip()
    if not name:
        return _error('Missing name', 400)
    op_id = str(data.get('id') or '').strip() or None
    _service().set_operator(op_id, name)
    return jsonify({'status': 'success', 'operator': {'id': op_id, 'name': name}})


@app.route('/api/sales', methods=['POST'])
def api_submit_sale():
    """Record a sale locally. It is final immediately; sync happens in the background."""
    data = _payload()
    try:
        txn = _service().submit_sale(
            items=data.get('items') or [],
            total=_float_arg(data, 'total'),
            payment_method=data.get('paymentMethod') or 'cash',
            credit_customer=data.get('creditCustomerId') or data.get('creditCustomer'),
        )
    except UnknownEntityError as exc:
        return _error(str(exc), 404)
    except (TypeError, ValueError) as exc:
        return _error(str(exc), 400)
    return jsonify({'status': 'success', 'transaction': txn.to_dict()})


@app.route('/api/transactions')
def api_transactions():
    scope = (request.args.get('scope') or 'mine').strip().lower()
    txs = _service().list_transactions(request.args.get('q'), mine_only=scope != 'all')
    return jsonify({'status': 'success', 'transactions': [t.to_dict() for t in txs]})


@app.route('/api/transactions/<txn_id>/reprint', methods=['POST'])
def api_reprint(txn_id):
    try:
        txn = _service().reprint_receipt(txn_id)
    except UnknownEntityError as exc:
        return _error(str(exc), 404)
    return jsonify({'status': 'success', 'transaction': txn.to_dict()})


@app.route('/api/credit-customers')
def api_credit_customers():
    customers = _service().search_credit_customers(request.args.get('q') or '')
    return jsonify({'status': 'success', 'customers': [c.to_dict() for c in customers]})


@app.route('/api/credit-customers', methods=['POST'])
def api_add_credit_customer():
    data = _payload()
    try:
        customer = _service().add_credit_customer(data.get('name'), data.get('phone'))
    except ValueError as exc:
        return _error(str(exc), 400)
    return jsonify({'status': 'success', 'customer': customer.to_dict()})


@app.route('/api/credit-customers/<customer_id>/adjust', methods=['POST'])
def api_adjust_credit(customer_id):
    data = _payload()
    try:
        delta = _float_arg(data, 'delta')
        if delta is None:
            return _error('Missing delta', 400)
        customer = _service().adjust_credit_balance(customer_id, delta)
    except UnknownEntityError as exc:
        return _error(str(exc), 404)
    except (TypeError, ValueError) as exc:
        return _error(str(exc), 400)
    return jsonify({'status': 'success', 'customer': customer.to_dict()})


@app.route('/api/products')
def api_products():
    products = _service().search_products(request.args.get('q') or '', request.args.get('category'))
    return jsonify({'status': 'success', 'products': [p.to_dict() for p in products]})


@app.route('/api/categories')
def api_categories():
    return jsonify({'status': 'success', 'categories': _service().list_categories()})


@app.route('/api/closing-report')
def api_closing_report():
    report = _service().get_closing_report(request.args.get('date'))
    return jsonify({'status': 'success', 'report': report.to_dict()})


@app.route('/api/closing-report/print', methods=['POST'])
def api_print_closing_report():
    result = _service().print_closing_report(_payload().get('date') or request.args.get('date'))
    ok = bool(result.get('success', True))
    return jsonify({'status': 'success' if ok else 'error', 'print': result}), (200 if ok else 502)


if __name__ == '__main__':
    app.run(host=_settings.host, port=_settings.port, debug=_settings.debug)
