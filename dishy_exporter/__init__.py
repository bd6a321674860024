"""Prometheus exporter for the Starlink dish status page.

This package provides:
- RpcTransport: WebSocket connection to a Chrome DevTools Protocol endpoint
- SessionController: One persistent, paused page synchronized with DOM mutations
- encode: Schema-free JSON to exposition-format encoder
- CLI: serve / scrape / encode subcommands
"""

__version__ = "0.1.0"
