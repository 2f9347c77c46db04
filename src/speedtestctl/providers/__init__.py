"""Provider interfaces for speedtestctl."""
from __future__ import annotations

from .acme import AcmeClient
from .nginx import NginxProvider, synthesize_config
from .opkg import PackageManager
from .service import ServiceController, ServiceError, ServiceState, detect_supervision

__all__ = [
    "AcmeClient",
    "NginxProvider",
    "PackageManager",
    "ServiceController",
    "ServiceError",
    "ServiceState",
    "detect_supervision",
    "synthesize_config",
]
