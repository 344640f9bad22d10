"""Trusted network gateway building blocks: metrics, exporters, supervised tasks, streams, access logs, egress helpers and a service runtime."""

__version__ = "2.2.3"
__all__ = ["access", "egress", "exporters", "metrics", "runtime", "streams", "supervise"]