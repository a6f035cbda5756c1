"""Prometheus exposition for the followbot daemon and dashboard.

`start_server_safe` keeps the process running when the metrics port is taken,
which happens when the daemon and a one-off command share a host.
"""

import logging
from typing import Optional

from prometheus_client import start_http_server

log = logging.getLogger(__name__)


def start_server_safe(port: int) -> Optional[int]:
    """Start the metrics HTTP server; return the bound port, or None when disabled/unavailable."""
    if port <= 0:
        log.info("metrics server disabled (port=%s)", port)
        return None
    try:
        start_http_server(port)
    except OSError as e:
        log.warning("metrics server not started on :%s: %s", port, e)
        return None
    log.info("metrics server listening on :%s", port)
    return port
