"""Tests for the blocking and cooperative HTTP clients."""

import asyncio
import socket
import threading
from unittest.mock import MagicMock

import pytest
import requests

aiohttp_mod = pytest.importorskip("aiohttp")

import aiohttp.test_utils  # noqa: F401  (registers aiohttp_mod.test_utils)
from aiohttp import web

from pglocal.common.async_http import AsyncHttpClient
from pglocal.common.http_client import HttpClient, is_transient_status
from pglocal.common.retry import RetryPolicy
from pglocal.errors import HttpError, NetworkError, Timeout

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, jitter=0)


def _response(status=200, text="", chunks=None):
    response = MagicMock()
    response.status_code = status
    response.text = text
    response.iter_content.return_value = iter(chunks or [])
    return response


def _truncating_server(body, cut):
    """Serve ``body`` twice; the first connection closes after ``cut`` bytes."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(2)
    head = b"HTTP/1.1 200 OK\r\nContent-Length: %d\r\nConnection: close\r\n\r\n" % len(body)

    def serve():
        with listener:
            for payload in (body[:cut], body):
                conn, _ = listener.accept()
                with conn:
                    conn.recv(65536)
                    conn.sendall(head + payload)

    threading.Thread(target=serve, daemon=True).start()
    return listener.getsockname()


class TestTransientStatus:
    @pytest.mark.parametrize("status,expected", [(408, True), (429, True), (500, True), (503, True), (404, False), (403, False)])
    def test_classification(self, status, expected):
        assert is_transient_status(status) is expected


class TestHttpClient:
    """Retry and error mapping of the requests based client."""

    def test_retries_server_error_then_succeeds(self):
        """A 503 is retried; the next 200 body is returned."""
        session = MagicMock()
        session.get.side_effect = [_response(503), _response(200, text="hello")]
        client = HttpClient(session=session, retry=NO_WAIT)

        assert client.get_text("https://example.com/a") == "hello"
        assert session.get.call_count == 2
        headers = session.get.call_args.kwargs["headers"]
        assert headers["User-Agent"] == "pglocal"

    def test_missing_resource_allowed(self):
        session = MagicMock()
        session.get.return_value = _response(404)
        client = HttpClient(session=session, retry=NO_WAIT)

        assert client.get_text("https://example.com/a.sha256", allow_missing=True) is None
        assert session.get.call_count == 1

    def test_missing_resource_raises(self):
        """A 404 is not retried and surfaces as HttpError."""
        session = MagicMock()
        session.get.return_value = _response(404)
        client = HttpClient(session=session, retry=NO_WAIT)

        with pytest.raises(HttpError) as exc_info:
            client.get_text("https://example.com/a")
        assert exc_info.value.status == 404
        assert session.get.call_count == 1

    def test_timeout_after_retries(self):
        session = MagicMock()
        session.get.side_effect = requests.Timeout("read timed out")
        client = HttpClient(session=session, retry=NO_WAIT, timeout=1)

        with pytest.raises(Timeout):
            client.get_text("https://example.com/a")
        assert session.get.call_count == 3

    def test_connection_error_becomes_network_error(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("refused")
        client = HttpClient(session=session, retry=NO_WAIT)

        with pytest.raises(NetworkError):
            client.get_text("https://example.com/a")

    def test_context_manager_closes_session(self):
        session = MagicMock()
        session.get.return_value = _response(200, text="16.4.0")
        with HttpClient(session=session, retry=NO_WAIT) as client:
            assert client.get_text("https://example.com/a") == "16.4.0"
        session.close.assert_called_once()

    def test_download_writes_file(self, tmp_path):
        session = MagicMock()
        session.get.return_value = _response(200, chunks=[b"abc", b"", b"def"])
        client = HttpClient(session=session, retry=NO_WAIT)
        dest = tmp_path / "archive.tar.gz"

        assert client.download("https://example.com/archive.tar.gz", dest) == 6
        assert dest.read_bytes() == b"abcdef"
        assert session.get.call_args.kwargs["stream"] is True

    def test_failed_download_leaves_no_file(self, tmp_path):
        """A stream broken on every attempt removes the partial file."""
        def broken(*args, **kwargs):
            response = _response(200)
            response.iter_content.side_effect = requests.ConnectionError("reset")
            return response

        session = MagicMock()
        session.get.side_effect = broken
        client = HttpClient(session=session, retry=NO_WAIT)
        dest = tmp_path / "archive.tar.gz"

        with pytest.raises(NetworkError):
            client.download("https://example.com/archive.tar.gz", dest)
        assert not dest.exists()
        assert session.get.call_count == 3

    def test_truncated_body_is_downloaded_again(self, tmp_path):
        """A connection closed mid-body is retried and the file rewritten whole."""
        body = bytes(range(256)) * 400
        host, port = _truncating_server(body, cut=1000)
        dest = tmp_path / "archive.tar.gz"

        with HttpClient(retry=NO_WAIT) as client:
            written = client.download(f"http://{host}:{port}/archive.tar.gz", dest)

        assert written == len(body)
        assert dest.read_bytes() == body


class TestAsyncHttpClient:
    """aiohttp based client against a local test server."""

    def _app(self, hits):
        async def text(request):
            return web.Response(text="catalog")

        async def flaky(request):
            hits.append(request.path)
            if len(hits) == 1:
                return web.Response(status=500)
            return web.Response(text="16.4.0")

        async def missing(request):
            return web.Response(status=404)

        async def archive(request):
            return web.Response(body=b"x" * 200_000)

        app = web.Application()
        app.router.add_get("/text", text)
        app.router.add_get("/flaky", flaky)
        app.router.add_get("/missing", missing)
        app.router.add_get("/archive", archive)
        return app

    def test_requests(self, tmp_path):
        hits = []
        dest = tmp_path / "archive.bin"

        async def _run():
            async with aiohttp_mod.test_utils.TestServer(self._app(hits)) as ts:
                base = f"http://{ts.host}:{ts.port}"
                async with AsyncHttpClient(retry=NO_WAIT) as http:
                    assert await http.get_text(f"{base}/text") == "catalog"
                    assert await http.get_text(f"{base}/flaky") == "16.4.0"
                    assert await http.get_text(f"{base}/missing", allow_missing=True) is None
                    with pytest.raises(HttpError):
                        await http.get_text(f"{base}/missing")
                    return await http.download(f"{base}/archive", dest)

        assert asyncio.run(_run()) == 200_000
        assert dest.stat().st_size == 200_000
        assert hits == ["/flaky", "/flaky"]

    def test_download_failure_removes_file(self, tmp_path):
        dest = tmp_path / "archive.bin"

        async def _run():
            async with aiohttp_mod.test_utils.TestServer(self._app([])) as ts:
                async with AsyncHttpClient(retry=NO_WAIT) as http:
                    await http.download(f"http://{ts.host}:{ts.port}/missing", dest)

        with pytest.raises(HttpError):
            asyncio.run(_run())
        assert not dest.exists()

    def test_unused_client_refuses_requests(self):
        async def _run():
            await AsyncHttpClient().get_text("http://127.0.0.1:9/")

        with pytest.raises(RuntimeError):
            asyncio.run(_run())
