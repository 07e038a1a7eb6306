"""
Connectivity check — socket-level probe of the backend host.

Works regardless of WiFi / LAN / mobile hotspot: it only tests whether a TCP
connection to the server can be established. Used to wake the delivery worker
as soon as the network comes back instead of waiting out the backoff.
"""

import socket
from urllib.parse import urlsplit


def server_address(server_url):
    parts = urlsplit(server_url)
    host = parts.hostname or ""
    port = parts.port or (443 if parts.scheme == "https" else 80)
    return host, port


def is_online(server_url, timeout=4):
    host, port = server_address(server_url)
    if not host:
        return False
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.close()
        return True
    except OSError:
        return False
