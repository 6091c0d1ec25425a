import pytest
import requests

from blobsaver.errors import Reportable
from blobsaver.signed_versions import get_all_signed_versions

PAYLOAD = {
    "identifier": "iPhone10,3",
    "firmwares": [
        {"version": "16.7.1", "buildid": "20H30", "signed": False},
        {"version": "16.7.2", "buildid": "20H115", "signed": True},
        {"version": "16.6.1", "buildid": "20G81", "signed": False},
        {"version": "16.10", "buildid": "20X1", "signed": True},
    ],
}


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.urls = []

    def get(self, url, **kwargs):
        self.urls.append(url)
        if self.error:
            raise self.error
        return self.response


def test_only_signed_versions_newest_first():
    session = FakeSession(FakeResponse(PAYLOAD))
    assert get_all_signed_versions("iPhone10,3", session=session) == ["16.10", "16.7.2"]
    assert session.urls == ["https://api.ipsw.me/v4/device/iPhone10,3?type=ipsw"]


def test_connection_error_is_reportable():
    session = FakeSession(error=requests.ConnectionError("no route"))
    with pytest.raises(Reportable) as exc:
        get_all_signed_versions("iPhone10,3", session=session)
    assert isinstance(exc.value.original_exception, requests.ConnectionError)
    assert "ipsw.me" in str(exc.value)


def test_http_error_is_reportable():
    session = FakeSession(FakeResponse({}, status_code=404))
    with pytest.raises(Reportable):
        get_all_signed_versions("iPhone99,9", session=session)


def test_own_session_is_closed(monkeypatch):
    class ClosingSession(FakeSession):
        instances = []

        def __init__(self):
            super().__init__(FakeResponse(PAYLOAD))
            self.closed = False
            ClosingSession.instances.append(self)

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            self.closed = True

    monkeypatch.setattr("blobsaver.signed_versions.requests.Session", ClosingSession)
    assert get_all_signed_versions("iPhone10,3") == ["16.10", "16.7.2"]
    assert [s.closed for s in ClosingSession.instances] == [True]
