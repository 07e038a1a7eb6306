"""
Shared HTTP session for the backend API: pooled connections, a short
transport-level retry for gateway blips, and the CA bundle lookup.

Anything longer than a gateway blip is left to the outbox backoff, which
survives restarts. The bearer token is sent per request (api._headers), so a
re-login never requires rebuilding the session.
"""

import os

import certifi
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .constants import AGENT_VERSION

USER_AGENT = f"geofence-agent/{AGENT_VERSION}"


def _gateway_retry():
    # POST is safe to replay here: the backend dedupes on localId.
    return Retry(
        total=3,
        backoff_factor=1,                       # 1s, 2s, 4s
        status_forcelist=[502, 503, 504],
        allowed_methods=["GET", "POST"],
        respect_retry_after_header=True,
        raise_on_status=False,
    )


def _get_ca_bundle():
    """REQUESTS_CA_BUNDLE / SSL_CERT_FILE if they point at a file, else certifi's bundle."""
    for var in ("REQUESTS_CA_BUNDLE", "SSL_CERT_FILE"):
        path = os.environ.get(var)
        if path and os.path.isfile(path):
            return path
    return certifi.where()


def create_session():
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=1, pool_maxsize=2, max_retries=_gateway_retry())
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.verify = _get_ca_bundle()
    session.headers.update({
        "Content-Type": "application/json",
        "Accept": "application/json",
        "User-Agent": USER_AGENT,
    })
    return session


def reset_session(session):
    """Close and recreate the HTTP session (fixes stale connections)."""
    try:
        session.close()
    except Exception:
        pass
    return create_session()


http = create_session()
