from flask import Blueprint, request

from specifys_billing.extensions import get_context
from specifys_billing.services import credits_api_service

credits_bp = Blueprint('credits_api', __name__)


@credits_bp.route('/api/credits/grant', methods=['POST'])
def grant_credits():
    return credits_api_service.grant_credits(get_context(), request)


@credits_bp.route('/api/credits/refund', methods=['POST'])
def refund_credit():
    return credits_api_service.refund_credit(get_context(), request)


@credits_bp.route('/api/credits/transactions', methods=['GET'])
def list_transactions():
    return credits_api_service.list_transactions(get_context(), request)


@credits_bp.route('/api/credits/entitlements', methods=['GET'])
def get_entitlements():
    return credits_api_service.get_entitlements(get_context(), request)
