"""
Tests for the retrying HTTP client and the retry audit log.
"""

import json
import random

import httpx
import pytest

from services.giving_sync.errors import ErrorKind, SourceAPIError, SyncError
from services.giving_sync.http_client import (
    RETRYABLE_STATUS_CODES,
    RetryAuditLog,
    RetryingHTTPClient,
    calculate_backoff_delay,
)


def make_client(responses, audit_log=None, sleeps=None, **kwargs):
    """Client whose transport replays ``responses`` (Response or exception) in order."""
    queue = list(responses)
    calls = []

    def handler(request):
        calls.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    client = RetryingHTTPClient(
        audit_log=audit_log if audit_log is not None else RetryAuditLog(),
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
        rng=random.Random(7),
        transport=httpx.MockTransport(handler),
        **kwargs
    )
    return client, calls


class TestBackoffCalculation:
    """Test exponential backoff calculation."""

    def test_doubling_from_base(self):
        rng = random.Random(1)
        assert 1.0 <= calculate_backoff_delay(1, rng=rng) <= 1.3
        assert 2.0 <= calculate_backoff_delay(2, rng=rng) <= 2.3
        assert 4.0 <= calculate_backoff_delay(3, rng=rng) <= 4.3

    def test_no_jitter(self):
        assert calculate_backoff_delay(2, base_delay=0.5, max_jitter=0) == 1.0

    def test_jitter_range(self):
        delays = [calculate_backoff_delay(1, base_delay=10.0) for _ in range(100)]
        assert min(delays) >= 10.0
        assert max(delays) <= 10.3


class TestRetryingHTTPClient:
    """Test retry behavior against a mock transport."""

    def test_successful_request(self):
        client, calls = make_client([httpx.Response(200, json={"ok": True})])

        assert client.get_json("https://example.test/api") == {"ok": True}
        assert len(calls) == 1

    def test_retries_then_succeeds(self):
        """503, 503, 200: two audit entries and two backoff sleeps."""
        audit = RetryAuditLog()
        sleeps = []
        client, calls = make_client(
            [
                httpx.Response(503, text="unavailable"),
                httpx.Response(503, text="unavailable"),
                httpx.Response(200, json={"data": []}),
            ],
            audit_log=audit,
            sleeps=sleeps,
        )

        assert client.get_json("https://example.test/things") == {"data": []}
        assert len(calls) == 3
        assert [e["attempt"] for e in audit.entries] == [1, 2]
        assert all(e["status"] == 503 for e in audit.entries)
        assert all(e["target"] == "https://example.test/things" for e in audit.entries)
        assert 1.0 <= sleeps[0] <= 1.3
        assert 2.0 <= sleeps[1] <= 2.3

    def test_exhausted_attempts_raise_transient(self):
        audit = RetryAuditLog()
        client, calls = make_client([httpx.Response(500)] * 3, audit_log=audit, error_cls=SourceAPIError)

        with pytest.raises(SourceAPIError) as exc_info:
            client.get_json("https://example.test/api")

        assert exc_info.value.kind == ErrorKind.TRANSIENT
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 500
        assert len(calls) == 3
        assert [e["attempt"] for e in audit.entries] == [1, 2]

    @pytest.mark.parametrize("outcome", [
        httpx.ReadTimeout("timed out"),
        httpx.Response(503),
        httpx.Response(200, text="<html>ok</html>"),
    ])
    def test_request_without_retry_is_sent_once(self, outcome):
        audit = RetryAuditLog()
        sleeps = []
        client, calls = make_client(
            [outcome, httpx.Response(200, json={"ok": True})],
            audit_log=audit,
            sleeps=sleeps,
        )

        with pytest.raises(SyncError) as exc_info:
            client.request_json("POST", "https://example.test/api", retry=False, json={})

        assert exc_info.value.kind == ErrorKind.TRANSIENT
        assert exc_info.value.retryable is False
        assert len(calls) == 1
        assert sleeps == []
        assert len(audit) == 0

    def test_transport_error_is_retried(self):
        audit = RetryAuditLog()
        client, calls = make_client(
            [httpx.ConnectError("refused"), httpx.Response(200, json={"ok": 1})],
            audit_log=audit,
        )

        assert client.get_json("https://example.test/api") == {"ok": 1}
        assert audit.entries[0]["status"] is None
        assert "ConnectError" in audit.entries[0]["error"]

    def test_rate_limit_is_retried(self):
        assert 429 in RETRYABLE_STATUS_CODES
        client, calls = make_client([httpx.Response(429), httpx.Response(200, json={})])

        assert client.get_json("https://example.test/api") == {}
        assert len(calls) == 2

    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    def test_client_error_fails_immediately(self, status):
        client, calls = make_client([httpx.Response(status, text="nope")])

        with pytest.raises(SyncError) as exc_info:
            client.get_json("https://example.test/api")

        assert exc_info.value.kind == ErrorKind.UPSTREAM
        assert exc_info.value.status_code == status
        assert exc_info.value.body == "nope"
        assert len(calls) == 1

    def test_non_json_success_body_is_retried(self):
        client, calls = make_client([
            httpx.Response(200, text="<html>maintenance</html>"),
            httpx.Response(200, json={"ok": True}),
        ])

        assert client.get_json("https://example.test/api") == {"ok": True}
        assert len(calls) == 2

    def test_json_array_body_is_not_an_object(self):
        client, calls = make_client([httpx.Response(200, json=[1, 2])] * 3)

        with pytest.raises(SyncError) as exc_info:
            client.get_json("https://example.test/api")

        assert exc_info.value.kind == ErrorKind.TRANSIENT

    def test_post_json_sends_body(self):
        client, calls = make_client([httpx.Response(200, json={"Id": "1"})])

        client.post_json("https://example.test/deposit", json={"Line": []})

        assert calls[0].method == "POST"
        assert json.loads(calls[0].content) == {"Line": []}


class TestRetryAuditLog:
    """Test the retry audit log."""

    def test_writes_json_lines(self, tmp_path):
        path = tmp_path / "logs" / "retries.log"
        audit = RetryAuditLog(str(path))

        audit.record("https://example.test/a", 1, status=503)
        audit.record("https://example.test/a", 2, error="ReadTimeout: timed out")

        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert [line["attempt"] for line in lines] == [1, 2]
        assert lines[0]["status"] == 503
        assert lines[1]["error"] == "ReadTimeout: timed out"
        assert "ts" in lines[0]

    def test_unwritable_path_is_ignored(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        audit = RetryAuditLog(str(blocker / "retries.log"))

        audit.record("https://example.test/a", 1, status=500)

        assert len(audit) == 1
