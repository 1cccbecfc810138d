import pytest
import requests

from Document_reader import ExtractionFailure
from resilient import RemoteBackend, RetriesExhausted, call_with_retries, is_retryable_error


class HTTPError(Exception):
    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def _flaky(failures):
    calls = {"n": 0}

    def op():
        calls["n"] += 1
        if calls["n"] <= len(failures):
            raise failures[calls["n"] - 1]
        return "ok"

    return op, calls


def test_retries_transient_failures_with_backoff():
    delays = []
    op, calls = _flaky([requests.Timeout("slow"), HTTPError(503)])

    assert call_with_retries(op, max_retries=3, base_delay=1.0, sleep=delays.append) == "ok"
    assert calls["n"] == 3
    assert delays == [1.0, 2.0]


def test_gives_up_after_max_attempts():
    delays = []
    op, calls = _flaky([HTTPError(429)] * 5)

    with pytest.raises(RetriesExhausted) as exc:
        call_with_retries(op, max_retries=3, base_delay=0.5, sleep=delays.append)
    assert calls["n"] == 3
    assert exc.value.attempts == 3
    assert exc.value.last_error.status_code == 429
    assert delays == [0.5, 1.0]


def test_non_retryable_errors_propagate_immediately():
    delays = []
    op, calls = _flaky([HTTPError(400)])

    with pytest.raises(HTTPError):
        call_with_retries(op, max_retries=3, sleep=delays.append)
    assert calls["n"] == 1
    assert delays == []


def test_custom_predicate():
    op, calls = _flaky([ValueError("flaky")])
    assert call_with_retries(op, is_retryable=lambda e: isinstance(e, ValueError), sleep=lambda s: None) == "ok"
    assert calls["n"] == 2


def test_retryable_classification():
    assert is_retryable_error(requests.ConnectionError("reset"))
    assert is_retryable_error(HTTPError(500))
    assert is_retryable_error(HTTPError(429))
    assert not is_retryable_error(HTTPError(404))
    assert not is_retryable_error(KeyError("x"))


class FakeResponse:
    def __init__(self, status, body):
        self.status_code = status
        self._body = body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, timeout=None, **kwargs):
        self.calls.append((url, timeout, kwargs))
        return self.responses.pop(0)


def test_remote_parse_retries_then_returns_document():
    session = FakeSession([FakeResponse(502, {}), FakeResponse(200, {"extractedText": "Credit Score: 700"})])
    backend = RemoteBackend("http://parser.local/", timeout=5, max_retries=3, backoff_base=0.1,
                            session=session, sleep=lambda s: None)

    doc = backend.parse_document(b"%PDF", "application/pdf", "app.pdf")

    assert doc.method == "remote"
    assert doc.text == "Credit Score: 700"
    assert session.calls[0][0] == "http://parser.local/parse"
    assert session.calls[0][1] == 5


def test_remote_parse_with_empty_text_is_a_failure():
    session = FakeSession([FakeResponse(200, {"text": ""})])
    backend = RemoteBackend("http://parser.local", session=session, sleep=lambda s: None)
    with pytest.raises(ExtractionFailure):
        backend.parse_document(b"x", "text/plain", "a.txt")


def test_remote_match_unwraps_matches():
    session = FakeSession([FakeResponse(200, {"matches": [{"lender_id": 1, "match_score": 80}]})])
    backend = RemoteBackend("http://parser.local", session=session, sleep=lambda s: None)
    assert backend.match_lenders({"credit_score": 700}, []) == [{"lender_id": 1, "match_score": 80}]
