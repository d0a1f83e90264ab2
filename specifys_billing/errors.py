"""Exception taxonomy shared by the ledger, resolver and HTTP layer."""

from flask import g, jsonify


class BillingError(Exception):
    status_code = 500
    error = 'Billing error'

    def __init__(self, message=None):
        super().__init__(message or self.error)
        self.message = message or self.error

    def to_payload(self):
        return {'error': self.error, 'message': self.message}


class ValidationError(BillingError):
    """Malformed input from a caller. Raised before any write."""

    status_code = 400
    error = 'Invalid request'


class InsufficientCreditsError(BillingError):
    status_code = 403
    error = 'Insufficient credits'

    def __init__(self, message='You do not have enough credits to create a spec'):
        super().__init__(message)


class SpecLimitReachedError(BillingError):
    status_code = 403
    error = 'Specification limit reached'

    def __init__(self, message='Free accounts can hold one specification. Purchase credits to create more.'):
        super().__init__(message)


class LemonApiError(BillingError):
    """Non-2xx or transport failure talking to Lemon Squeezy."""

    status_code = 502
    error = 'Billing provider error'

    def __init__(self, status, body=None, url=''):
        self.status = int(status or 0)
        self.body = body
        self.url = url
        super().__init__(f"Lemon Squeezy request failed with status {self.status}")

    def to_payload(self):
        return {'error': self.error, 'message': self.message, 'details': self.body}


def register_error_handlers(app):
    @app.errorhandler(BillingError)
    def handle_billing_error(error):
        payload = error.to_payload()
        payload['requestId'] = getattr(g, 'request_id', '')
        return jsonify(payload), error.status_code
