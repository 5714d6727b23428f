from .settings import (
    Settings,
    SessionSettings,
    ReconnectSettings,
    RoutingSettings,
    WebSettings,
    get_settings,
)

__all__ = [
    "Settings",
    "SessionSettings",
    "ReconnectSettings",
    "RoutingSettings",
    "WebSettings",
    "get_settings",
]
