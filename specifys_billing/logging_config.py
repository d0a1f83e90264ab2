import json
import logging

logger = logging.getLogger('specifys_billing')


def configure_logging(level: str = 'INFO') -> None:
    """Idempotent logging setup for app-factory flow."""
    root = logging.getLogger()
    if root.handlers:
        return
    numeric_level = getattr(logging, str(level or 'INFO').upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )


def log_event(level, event, log=None, **fields):
    """Emit one JSON line per billing event so log search can filter on keys."""
    payload = {'event': event}
    for key, value in fields.items():
        payload[str(key)] = value
    (log or logger).log(level, json.dumps(payload, ensure_ascii=True, default=str))
