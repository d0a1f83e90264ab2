from flask import Blueprint, request

from specifys_billing.extensions import get_context
from specifys_billing.services import lemon_api_service

lemon_bp = Blueprint('lemon_api', __name__)


@lemon_bp.route('/api/lemon/checkout', methods=['POST'])
def create_checkout():
    return lemon_api_service.create_checkout(get_context(), request)


@lemon_bp.route('/api/lemon/subscription/cancel', methods=['POST'])
def cancel_subscription():
    return lemon_api_service.cancel_subscription(get_context(), request)


@lemon_bp.route('/api/lemon/webhook', methods=['POST'])
def webhook():
    return lemon_api_service.webhook(get_context(), request)


@lemon_bp.route('/api/lemon/counter', methods=['GET'])
def purchase_counter():
    return lemon_api_service.purchase_counter(get_context(), request)


@lemon_bp.route('/api/lemon/products', methods=['GET'])
def list_products():
    return lemon_api_service.list_products(get_context(), request)
