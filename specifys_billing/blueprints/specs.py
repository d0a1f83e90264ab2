from flask import Blueprint, request

from specifys_billing.extensions import get_context
from specifys_billing.services import specs_api_service

specs_bp = Blueprint('specs_api', __name__)


@specs_bp.route('/api/specs/consume-credit', methods=['POST'])
def consume_credit():
    return specs_api_service.consume_credit(get_context(), request)


@specs_bp.route('/api/specs/entitlements', methods=['GET'])
def get_entitlements():
    return specs_api_service.get_entitlements(get_context(), request)
