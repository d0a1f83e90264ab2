"""Minimal Lemon Squeezy REST client (JSON:API over httpx)."""

import httpx

from specifys_billing.errors import LemonApiError

LEMON_API_BASE_URL = 'https://api.lemonsqueezy.com/v1'
JSON_API_MEDIA_TYPE = 'application/vnd.api+json'


class LemonSqueezyClient:
    def __init__(self, api_key, base_url=LEMON_API_BASE_URL, timeout=15.0, transport=None):
        if not api_key:
            raise ValueError('Lemon Squeezy API key is required')
        self.base_url = base_url.rstrip('/')
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                'Authorization': f"Bearer {api_key}",
                'Accept': JSON_API_MEDIA_TYPE,
                'Content-Type': JSON_API_MEDIA_TYPE,
            },
        )

    def close(self):
        self._http.close()

    def _request(self, method, path, params=None, payload=None):
        url = f"{self.base_url}{path}"
        try:
            response = self._http.request(method, path, params=params, json=payload)
        except httpx.HTTPError as exc:
            raise LemonApiError(0, {'message': str(exc)}, url) from exc

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {'raw': response.text}
        if response.status_code < 200 or response.status_code >= 300:
            raise LemonApiError(response.status_code, body, url)
        return body

    def create_checkout(self, store_id, variant_id, email=None, custom=None, test_mode=False,
                        redirect_url=None, checkout_options=None):
        """POST /checkouts. Returns ``(checkout_id, checkout_url, body)``."""
        product_options = {}
        if redirect_url:
            product_options['redirect_url'] = redirect_url
        payload = {
            'data': {
                'type': 'checkouts',
                'attributes': {
                    'checkout_data': {
                        'email': email or None,
                        'custom': {key: str(value) for key, value in (custom or {}).items() if value is not None},
                    },
                    'checkout_options': checkout_options or {'embed': False, 'media': True, 'logo': True},
                    'product_options': product_options,
                    'test_mode': bool(test_mode),
                },
                'relationships': {
                    'store': {'data': {'type': 'stores', 'id': str(store_id)}},
                    'variant': {'data': {'type': 'variants', 'id': str(variant_id)}},
                },
            },
        }
        body = self._request('POST', '/checkouts', payload=payload)
        data = body.get('data') or {}
        return data.get('id'), (data.get('attributes') or {}).get('url'), body

    def get_subscription(self, subscription_id, include_order=True):
        params = {'include': 'order'} if include_order else None
        return self._request('GET', f"/subscriptions/{subscription_id}", params=params)

    def list_subscriptions(self, store_id=None, status='active', filters=None, page_size=5):
        params = {'page[size]': int(page_size)}
        if store_id:
            params['filter[store_id]'] = str(store_id)
        if status:
            params['filter[status]'] = status
        for key, value in (filters or {}).items():
            if value not in (None, ''):
                params[f"filter[{key}]"] = str(value)
        body = self._request('GET', '/subscriptions', params=params)
        data = body.get('data') or []
        return data if isinstance(data, list) else []

    def update_subscription(self, subscription_id, attributes):
        payload = {
            'data': {
                'type': 'subscriptions',
                'id': str(subscription_id),
                'attributes': dict(attributes or {}),
            },
        }
        return self._request('PATCH', f"/subscriptions/{subscription_id}", payload=payload)

    def cancel_subscription(self, subscription_id):
        """DELETE /subscriptions/:id cancels at the end of the current period."""
        return self._request('DELETE', f"/subscriptions/{subscription_id}")

    def get_order(self, order_id):
        return self._request('GET', f"/orders/{order_id}")
