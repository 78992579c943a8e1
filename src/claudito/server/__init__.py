from .app import build_services, create_app
from .common import SERVICES, Services
from .websocket import WebSocketHub

__all__ = ["SERVICES", "Services", "WebSocketHub", "build_services", "create_app"]
