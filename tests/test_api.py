import pytest
import requests

from geofence_agent import api
from geofence_agent.exceptions import FetchError

CONFIG = {"serverUrl": "https://hr.example.com/", "authToken": "tok", "userId": "u1"}


class FakeResponse:
    def __init__(self, status_code, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def _reply(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    def get(self, url, **kwargs):
        return self._reply("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._reply("POST", url, **kwargs)


@pytest.mark.parametrize("status, accepted, retryable, duplicate", [
    (200, True, False, False),
    (201, True, False, False),
    (409, True, False, True),
    (400, False, False, False),
    (403, False, False, False),
    (404, False, False, False),
    (401, False, True, False),
    (408, False, True, False),
    (429, False, True, False),
    (500, False, True, False),
    (503, False, True, False),
])
def test_classify_status(status, accepted, retryable, duplicate):
    result = api.classify_status(status, "msg")
    assert (result.accepted, result.retryable, result.duplicate) == (accepted, retryable, duplicate)
    assert result.status == status


def test_submit_posts_payload_with_token(make_event):
    event = make_event().with_local_id()
    session = FakeSession(FakeResponse(201, {"success": True}))

    result = api.submit_attendance_event(CONFIG, event, session=session)

    assert result.accepted
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", "https://hr.example.com/api/attendance/log")
    assert kwargs["json"]["localId"] == event.local_id
    assert kwargs["headers"]["Authorization"] == "Bearer tok"
    assert kwargs["timeout"] > 0


def test_submit_rejection_carries_server_message(make_event):
    session = FakeSession(FakeResponse(400, {"message": "Location is not within the geofence region"}))

    result = api.submit_attendance_event(CONFIG, make_event().with_local_id(), session=session)

    assert result.terminal
    assert result.reason == "Location is not within the geofence region"


@pytest.mark.parametrize("error", [
    requests.Timeout("read timed out"),
    requests.ConnectionError("refused"),
    requests.RequestException("odd"),
])
def test_submit_network_errors_are_retryable(make_event, error):
    result = api.submit_attendance_event(CONFIG, make_event().with_local_id(), session=FakeSession(error=error))
    assert result.retryable and not result.accepted


def test_submit_5xx_with_html_body(make_event):
    session = FakeSession(FakeResponse(502, text="<html>Bad Gateway</html>"))
    result = api.submit_attendance_event(CONFIG, make_event().with_local_id(), session=session)
    assert result.retryable
    assert "502" in result.reason


def test_fetch_zones_unwraps_regions(zone_dict):
    session = FakeSession(FakeResponse(200, {"success": True, "regions": [zone_dict]}))

    regions = api.fetch_active_zones(CONFIG, session=session)

    assert regions == [zone_dict]
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", "https://hr.example.com/api/geofence/regions")


def test_fetch_zones_accepts_bare_list(zone_dict):
    session = FakeSession(FakeResponse(200, [zone_dict]))
    assert api.fetch_active_zones(CONFIG, session=session) == [zone_dict]


@pytest.mark.parametrize("session", [
    FakeSession(FakeResponse(500, {"message": "db down"})),
    FakeSession(FakeResponse(200, None, text="<html>")),
    FakeSession(FakeResponse(200, {"regions": "nope"})),
    FakeSession(error=requests.ConnectionError("refused")),
])
def test_fetch_zones_failures_raise(session):
    with pytest.raises(FetchError):
        api.fetch_active_zones(CONFIG, session=session)


def test_current_user_identity():
    assert api.current_user_identity(CONFIG) == "u1"
    with pytest.raises(ValueError):
        api.current_user_identity({"serverUrl": "x"})
