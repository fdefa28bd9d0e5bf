from flowgate.server.app import FlowgateServer, ServerConfig, create_app

__all__ = ["FlowgateServer", "ServerConfig", "create_app"]
