from .credits import credits_bp
from .health import health_bp
from .lemon import lemon_bp
from .specs import specs_bp

__all__ = ['credits_bp', 'health_bp', 'lemon_bp', 'specs_bp']
