from .base import BaseCollector, CollectorResult, parse_graph_datetime
from .password_expiry import PasswordExpiryCollector
from .sso_usage import SsoUsageCollector
from .sso_apps import SsoAppCollector

__all__ = [
    "BaseCollector",
    "CollectorResult",
    "parse_graph_datetime",
    "PasswordExpiryCollector",
    "SsoUsageCollector",
    "SsoAppCollector",
]
