"""Tests for the chunk transfer primitive."""

import asyncio
import dataclasses
import json
from unittest.mock import Mock

import httpx
import pytest

from common.types import (
    Ambiguous,
    AmbiguousReason,
    Confirmed,
    Rejected,
    RejectReason,
    TransferWindow,
)
from uploader.credentials import StaticTokenProvider
from uploader.transfer import ChunkTransfer, clamp_window, interpret_response

UPLOAD_TARGET = 'https://www.googleapis.com/upload/drive/v3/files?uploadType=resumable&upload_id=ABC123'


def make_transfer(handler, profile, **kwargs) -> ChunkTransfer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChunkTransfer(client, profile, **kwargs)


class TestInterpretResponse:
    """Tests for status code classification."""

    window = TransferWindow(0, 399, 1000)

    def test_308_uses_range_header(self):
        outcome = interpret_response(308, {'Range': 'bytes=0-199'}, b'', self.window)
        assert outcome == Confirmed(bytes_confirmed=200)

    def test_308_without_range_falls_back_to_window_end(self):
        outcome = interpret_response(308, {}, b'', self.window)
        assert outcome == Confirmed(bytes_confirmed=400)

    @pytest.mark.parametrize('status', [200, 201])
    def test_done(self, status):
        body = json.dumps({'id': 'drive-file-1'}).encode()
        outcome = interpret_response(status, {}, body, self.window)
        assert outcome == Confirmed(1000, is_file_complete=True, remote_file_id='drive-file-1')

    @pytest.mark.parametrize('status,reason', [
        (404, RejectReason.EXPIRED),
        (401, RejectReason.AUTH_FAILED),
        (403, RejectReason.PERMISSION_DENIED),
        (400, RejectReason.UNEXPECTED_STATUS),
    ])
    def test_fatal_statuses(self, status, reason):
        outcome = interpret_response(status, {}, b'', self.window)
        assert isinstance(outcome, Rejected)
        assert outcome.reason == reason
        assert outcome.recoverable is False
        assert outcome.status_code == status

    @pytest.mark.parametrize('status', [500, 502, 503, 504, 408, 599])
    def test_server_errors_recoverable(self, status):
        outcome = interpret_response(status, {}, b'', self.window)
        assert outcome.reason == RejectReason.SERVER_ERROR
        assert outcome.recoverable is True

    def test_rate_limited_recoverable(self):
        outcome = interpret_response(429, {}, b'', self.window)
        assert outcome.reason == RejectReason.RATE_LIMITED
        assert outcome.recoverable is True

    def test_error_message_from_body(self):
        body = json.dumps({'error': {'message': 'Backend Error'}}).encode()
        outcome = interpret_response(503, {}, body, self.window)
        assert outcome.message == 'Backend Error'


class TestClampWindow:
    """Tests for last-chunk correction."""

    def test_overshooting_window_clamped(self):
        # Window computed past EOF by a caller, payload is what the file really holds
        window = TransferWindow(800, 999, 1000)
        assert clamp_window(window, 500) == TransferWindow(800, 999, 1000)

    def test_short_payload_shrinks_window(self):
        assert clamp_window(TransferWindow(0, 399, 1000), 100) == TransferWindow(0, 99, 1000)

    def test_empty_payload_rejected(self):
        with pytest.raises(ValueError):
            clamp_window(TransferWindow(0, 399, 1000), 0)


class TestChunkTransfer:
    """Tests for ChunkTransfer.transfer() over a mocked transport."""

    @pytest.mark.asyncio
    async def test_sends_range_headers_and_body(self, desktop_profile):
        seen = {}

        def handler(request):
            seen['method'] = request.method
            seen['headers'] = request.headers
            seen['body'] = request.content
            return httpx.Response(308, headers={'Range': 'bytes=0-399'})

        transfer = make_transfer(handler, desktop_profile)
        chunk = b'a' * 400
        outcome = await transfer.transfer(TransferWindow(0, 399, 1000), chunk, UPLOAD_TARGET)

        assert outcome == Confirmed(400)
        assert seen['method'] == 'PUT'
        assert seen['headers']['Content-Range'] == 'bytes 0-399/1000'
        assert seen['headers']['Content-Length'] == '400'
        assert 'Authorization' not in seen['headers']
        assert seen['body'] == chunk

    @pytest.mark.asyncio
    async def test_final_chunk_completes(self, desktop_profile):
        def handler(request):
            assert request.headers['Content-Range'] == 'bytes 800-999/1000'
            return httpx.Response(200, json={'id': 'file-xyz', 'name': 'clip.mp4'})

        transfer = make_transfer(handler, desktop_profile)
        outcome = await transfer.transfer(TransferWindow(800, 999, 1000), b'z' * 200, UPLOAD_TARGET)

        assert outcome.is_file_complete
        assert outcome.bytes_confirmed == 1000
        assert outcome.remote_file_id == 'file-xyz'

    @pytest.mark.asyncio
    async def test_reports_in_chunk_progress(self, desktop_profile):
        def handler(request):
            return httpx.Response(308, headers={'Range': f'bytes=0-{len(request.content) - 1}'})

        progress = []
        transfer = make_transfer(handler, desktop_profile)
        size = 600 * 1024
        window = TransferWindow(0, size - 1, size * 2)

        await transfer.transfer(window, b'x' * size, UPLOAD_TARGET, on_progress=progress.append)

        assert progress == [256 * 1024, 512 * 1024, size]

    @pytest.mark.asyncio
    async def test_progress_callback_errors_do_not_affect_outcome(self, desktop_profile):
        def handler(request):
            return httpx.Response(308, headers={'Range': 'bytes=0-99'})

        def broken(sent):
            raise RuntimeError("sink exploded")

        transfer = make_transfer(handler, desktop_profile)
        outcome = await transfer.transfer(TransferWindow(0, 99, 1000), b'x' * 100, UPLOAD_TARGET, broken)

        assert outcome == Confirmed(100)

    @pytest.mark.asyncio
    async def test_network_error_is_ambiguous(self, desktop_profile):
        def handler(request):
            raise httpx.ConnectError("Connection reset by peer", request=request)

        transfer = make_transfer(handler, desktop_profile)
        outcome = await transfer.transfer(TransferWindow(0, 99, 1000), b'x' * 100, UPLOAD_TARGET)

        assert isinstance(outcome, Ambiguous)
        assert outcome.reason == AmbiguousReason.NETWORK

    @pytest.mark.asyncio
    async def test_transport_timeout_is_ambiguous(self, desktop_profile):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        transfer = make_transfer(handler, desktop_profile)
        outcome = await transfer.transfer(TransferWindow(0, 99, 1000), b'x' * 100, UPLOAD_TARGET)

        assert outcome == Ambiguous(AmbiguousReason.TIMEOUT, 'ReadTimeout')

    @pytest.mark.asyncio
    async def test_time_budget_exceeded_is_ambiguous(self, desktop_profile):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(308)

        profile = dataclasses.replace(desktop_profile, chunk_timeout=0.05)
        transfer = make_transfer(handler, profile)
        outcome = await transfer.transfer(TransferWindow(0, 99, 1000), b'x' * 100, UPLOAD_TARGET)

        assert isinstance(outcome, Ambiguous)
        assert outcome.reason == AmbiguousReason.TIMEOUT

    @pytest.mark.asyncio
    async def test_bearer_token_sent_when_configured(self, desktop_profile):
        seen = {}

        def handler(request):
            seen['auth'] = request.headers.get('Authorization')
            return httpx.Response(308, headers={'Range': 'bytes=0-99'})

        transfer = make_transfer(handler, desktop_profile, token_provider=StaticTokenProvider('ya29.token'))
        await transfer.transfer(TransferWindow(0, 99, 1000), b'x' * 100, UPLOAD_TARGET)

        assert seen['auth'] == 'Bearer ya29.token'

    @pytest.mark.asyncio
    async def test_401_invalidates_credentials(self, desktop_profile):
        def handler(request):
            return httpx.Response(401, json={'error': {'message': 'Invalid Credentials'}})

        provider = StaticTokenProvider('ya29.expired')
        on_auth_failed = Mock()
        transfer = make_transfer(handler, desktop_profile, token_provider=provider, on_auth_failed=on_auth_failed)

        outcome = await transfer.transfer(TransferWindow(0, 99, 1000), b'x' * 100, UPLOAD_TARGET)

        assert outcome == Rejected(RejectReason.AUTH_FAILED, False, 401, 'Invalid Credentials')
        on_auth_failed.assert_called_once()
        with pytest.raises(ValueError):
            provider.get_token()

    @pytest.mark.asyncio
    async def test_invalidated_token_rejects_without_request(self, desktop_profile):
        handler = Mock()
        provider = StaticTokenProvider('ya29.token')
        provider.invalidate()

        transfer = make_transfer(handler, desktop_profile, token_provider=provider)
        outcome = await transfer.transfer(TransferWindow(0, 99, 1000), b'x' * 100, UPLOAD_TARGET)

        assert isinstance(outcome, Rejected)
        assert outcome.reason == RejectReason.AUTH_FAILED
        handler.assert_not_called()
