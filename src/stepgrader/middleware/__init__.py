from stepgrader.middleware.relay import RelayMiddleware, TrafficMiddleware

__all__ = ["RelayMiddleware", "TrafficMiddleware"]
