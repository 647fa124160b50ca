from meterlink.transports.websocket import WebSocketTransport, connect_websocket

__all__ = ["WebSocketTransport", "connect_websocket"]
