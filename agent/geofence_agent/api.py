"""
Backend API calls — zone list fetch, attendance event submit, user identity.

All functions are blocking (called from the delivery worker thread or during
startup, never from the sample-processing path). Failures are classified
here; retrying is the outbox's job, not this module's.
"""

from dataclasses import dataclass

import requests

from .config import log
from .constants import (
    API_TIMEOUT_FETCH, API_TIMEOUT_SUBMIT, SUBMIT_PATH, ZONES_PATH,
    RETRYABLE_CLIENT_STATUSES,
)
from .exceptions import DeliveryError, FetchError
from . import http_client


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of one submit attempt."""
    accepted: bool
    retryable: bool = False
    duplicate: bool = False
    status: int | None = None
    reason: str = ""

    @classmethod
    def ok(cls, status, duplicate=False):
        return cls(accepted=True, status=status, duplicate=duplicate)

    @classmethod
    def retry(cls, reason, status=None):
        return cls(accepted=False, retryable=True, status=status, reason=reason)

    @classmethod
    def reject(cls, reason, status=None):
        return cls(accepted=False, retryable=False, status=status, reason=reason)

    @property
    def terminal(self):
        return not self.accepted and not self.retryable


def _url(config, path):
    return f"{config['serverUrl'].rstrip('/')}{path}"


def _headers(config):
    token = config.get("authToken")
    return {"Authorization": f"Bearer {token}"} if token else {}


def _server_message(resp):
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return data.get("message") or data.get("error") or ""
    return ""


# ─── Identity ────────────────────────────────────────────────────

def current_user_identity(config):
    """The signed-in user id. Issued by the login flow and stored in config."""
    user_id = config.get("userId")
    if not user_id:
        raise ValueError("No userId in config — sign in first")
    return str(user_id)


# ─── Zones ───────────────────────────────────────────────────────

def fetch_active_zones(config, session=None):
    """GET the active geofence regions. Returns the raw region dicts."""
    session = session or http_client.http
    url = _url(config, ZONES_PATH)
    try:
        resp = session.get(url, headers=_headers(config), timeout=API_TIMEOUT_FETCH)
    except requests.RequestException as e:
        raise FetchError(f"network error: {e}") from e

    if resp.status_code != 200:
        raise FetchError(f"HTTP {resp.status_code} — {_server_message(resp)}")
    try:
        data = resp.json()
    except ValueError as e:
        raise FetchError("response is not JSON") from e

    regions = data.get("regions") if isinstance(data, dict) else data
    if not isinstance(regions, list):
        raise FetchError("response has no region list")
    return regions


# ─── Attendance events ───────────────────────────────────────────

def classify_status(status, message=""):
    """Map an HTTP status to a SubmitResult."""
    if status in (200, 201):
        return SubmitResult.ok(status)
    if status == 409:
        # Server already holds this localId.
        return SubmitResult.ok(status, duplicate=True)
    if status in RETRYABLE_CLIENT_STATUSES or status >= 500:
        return SubmitResult.retry(f"HTTP {status} {message}".strip(), status)
    return SubmitResult.reject(message or f"HTTP {status}", status)


def _post_event(session, config, event):
    url = _url(config, SUBMIT_PATH)
    try:
        return session.post(url, json=event.to_payload(), headers=_headers(config),
                            timeout=API_TIMEOUT_SUBMIT)
    except requests.Timeout as e:
        raise DeliveryError("timeout") from e
    except requests.ConnectionError as e:
        raise DeliveryError("network unreachable") from e
    except requests.RequestException as e:
        raise DeliveryError(str(e)) from e


def submit_attendance_event(config, event, session=None):
    """POST one attendance event. Never raises for network trouble."""
    session = session or http_client.http
    try:
        resp = _post_event(session, config, event)
    except DeliveryError as e:
        log.warning("Submit %s failed: %s (%s)", event.local_id[:8], e, e.__cause__)
        return SubmitResult.retry(str(e))

    result = classify_status(resp.status_code, _server_message(resp))
    if result.accepted:
        log.info("Attendance %s OK | %s | zone=%s%s", event.type.value, event.local_id[:8],
                 event.zone_id or "-", " (duplicate)" if result.duplicate else "")
    elif resp.status_code == 401:
        log.error("Submit REJECTED (401) — auth token may have expired")
    return result
