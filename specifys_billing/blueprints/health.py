from flask import Blueprint, jsonify

from specifys_billing.extensions import get_context

health_bp = Blueprint('health', __name__)


@health_bp.route('/healthz')
def healthz():
    ctx = get_context()
    return jsonify({
        'status': 'ok',
        'firestore': ctx.db is not None,
        'lemon': ctx.lemon_client is not None,
        'mode': ctx.config.lemon_mode,
    }), 200
