"""Tests for the chunk sequencer state machine."""

import asyncio
import dataclasses
import io
import random
from typing import Callable, Optional

import pytest

from common.constants import MIB
from common.types import (
    Ambiguous,
    Confirmed,
    DeviceClass,
    ProbeResult,
    Rejected,
    RejectReason,
    SequencerState,
    TransferWindow,
)
from uploader.context import UploadRunContext
from uploader.exceptions import (
    PermissionDeniedError,
    RetryBudgetExhaustedError,
    SessionExpiredError,
    UploadCancelledError,
    UploadFailedError,
)
from uploader.file_handle import FileHandle
from uploader.policy import get_profile
from uploader.sequencer import ChunkSequencer, trust_mode_applies

UPLOAD_TARGET = 'https://upload.example/session?upload_id=XYZ'

SERVER_ERROR = Rejected(RejectReason.SERVER_ERROR, True, 503, 'Service unavailable')


def landed(window: TransferWindow) -> Confirmed:
    """What a healthy server answers for a window."""
    if window.is_last:
        return Confirmed(window.total_size, is_file_complete=True, remote_file_id='file-1')
    return Confirmed(window.end_exclusive)


class VirtualFile:
    """File handle stand-in of any size that does not hold the bytes in memory."""

    def __init__(self, total_size: int):
        self.total_size = total_size
        self.reads: list[TransferWindow] = []

    def read_window(self, window: TransferWindow) -> bytes:
        self.reads.append(window)
        return b''


class ScriptedTransfer:
    """Transfer fake answering each call from a script of (window, call number) -> outcome."""

    def __init__(self, script: Optional[Callable] = None):
        self.script = script or (lambda window, n: landed(window))
        self.windows: list[TransferWindow] = []

    async def transfer(self, window, chunk, upload_target, on_progress=None):
        assert upload_target == UPLOAD_TARGET
        self.windows.append(window)
        if on_progress is not None:
            on_progress(window.size)
        return self.script(window, len(self.windows))


class ScriptedProber:
    """Prober fake answering from a script of (call number) -> ProbeResult."""

    def __init__(self, script: Optional[Callable] = None):
        self.script = script or (lambda n: ProbeResult.failed())
        self.calls = 0

    async def probe(self, upload_target, total_size):
        self.calls += 1
        return self.script(self.calls)


def spans(windows: list[TransferWindow]) -> list[tuple[int, int]]:
    return [(w.start_byte, w.end_byte) for w in windows]


def assert_contiguous_cover(ranges, total_size: int) -> None:
    assert ranges[0][0] == 0
    for (_, end), (next_start, _) in zip(ranges, ranges[1:]):
        assert end == next_start
    assert ranges[-1][1] == total_size


class TestScenarios:
    """End-to-end runs of the sequencer against scripted collaborators."""

    @pytest.mark.asyncio
    async def test_three_windows_all_confirmed(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=70_000_000)
        transfer = ScriptedTransfer()
        prober = ScriptedProber()
        sequencer = ChunkSequencer(transfer, prober, profile, sleep=sleeper)

        result = await sequencer.run(VirtualFile(150_000_000), UPLOAD_TARGET)

        assert spans(transfer.windows) == [
            (0, 69_999_999),
            (70_000_000, 139_999_999),
            (140_000_000, 149_999_999),
        ]
        assert result.confirmed_bytes == 150_000_000
        assert result.windows == 3
        assert result.attempts == 3
        assert result.remote_file_id == 'file-1'
        assert not result.trusted
        assert sequencer.context.state == SequencerState.COMPLETE
        assert prober.calls == 0
        assert sleeper.delays == [profile.pacing_delay, profile.pacing_delay]

    @pytest.mark.asyncio
    async def test_ambiguous_chunk_resolved_by_probe(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=70_000_000)

        def script(window, n):
            return Ambiguous() if n == 2 else landed(window)

        transfer = ScriptedTransfer(script)
        prober = ScriptedProber(lambda n: ProbeResult(ok=True, confirmed_bytes=140_000_000))
        sequencer = ChunkSequencer(transfer, prober, profile, sleep=sleeper)

        result = await sequencer.run(VirtualFile(150_000_000), UPLOAD_TARGET)

        assert spans(transfer.windows) == [
            (0, 69_999_999),
            (70_000_000, 139_999_999),
            (140_000_000, 149_999_999),
        ]
        assert prober.calls == 1
        assert result.confirmed_bytes == 150_000_000
        assert not result.trusted
        # Pacing only: chunk 2 was never retried
        assert sleeper.delays == [profile.pacing_delay, profile.pacing_delay]

    @pytest.mark.asyncio
    async def test_single_window_server_error_is_trusted(self, desktop_profile, sleeper):
        # Accepted-risk path: the only window is also the last, so a failed
        # attempt with no confirmation is taken as landed.
        transfer = ScriptedTransfer(lambda window, n: SERVER_ERROR)
        prober = ScriptedProber()
        sequencer = ChunkSequencer(transfer, prober, desktop_profile, sleep=sleeper)

        result = await sequencer.run(VirtualFile(5_000_000), UPLOAD_TARGET)

        assert len(transfer.windows) == 1
        assert prober.calls == 1
        assert result.confirmed_bytes == 5_000_000
        assert result.trusted_ranges == ((0, 5_000_000),)
        assert sequencer.context.state == SequencerState.COMPLETE
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_rejected_last_chunk_with_complete_probe(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=400)

        def script(window, n):
            return SERVER_ERROR if window.is_last else landed(window)

        prober = ScriptedProber(lambda n: ProbeResult(ok=True, confirmed_bytes=1000, complete=True, remote_file_id='f-7'))
        sequencer = ChunkSequencer(ScriptedTransfer(script), prober, profile, sleep=sleeper)

        result = await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert result.confirmed_bytes == 1000
        assert result.remote_file_id == 'f-7'
        assert not result.trusted
        assert sequencer.context.state == SequencerState.COMPLETE

    @pytest.mark.asyncio
    async def test_partial_probe_resends_only_missing_bytes(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=400)

        def script(window, n):
            return Ambiguous() if n == 1 else landed(window)

        prober = ScriptedProber(lambda n: ProbeResult(ok=True, confirmed_bytes=200))
        transfer = ScriptedTransfer(script)
        sequencer = ChunkSequencer(transfer, prober, profile, sleep=sleeper)

        result = await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert spans(transfer.windows) == [(0, 399), (200, 399), (400, 799), (800, 999)]
        assert result.confirmed_ranges == ((0, 200), (200, 400), (400, 800), (800, 1000))
        assert sleeper.delays == [profile.retry_delay(1), profile.pacing_delay, profile.pacing_delay]

    @pytest.mark.asyncio
    async def test_confirmed_without_progress_is_verified_and_retried(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=400)

        def script(window, n):
            return Confirmed(0) if n == 1 else landed(window)

        prober = ScriptedProber(lambda n: ProbeResult(ok=True, confirmed_bytes=0))
        transfer = ScriptedTransfer(script)
        sequencer = ChunkSequencer(transfer, prober, profile, sleep=sleeper)

        await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert transfer.windows[0] == transfer.windows[1]
        assert prober.calls == 1

    @pytest.mark.asyncio
    async def test_reads_match_windows(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=400)
        data = bytes(range(250)) * 4
        sent = []

        class RecordingTransfer(ScriptedTransfer):
            async def transfer(self, window, chunk, upload_target, on_progress=None):
                sent.append(chunk)
                return await super().transfer(window, chunk, upload_target, on_progress)

        sequencer = ChunkSequencer(RecordingTransfer(), ScriptedProber(), profile, sleep=sleeper)
        await sequencer.run(FileHandle.from_bytes(data), UPLOAD_TARGET)

        assert b''.join(sent) == data


class TestRetryPolicy:
    """Retry budget, fatal rejections and trust mode."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize('device_class,expected_delays', [
        (DeviceClass.DESKTOP, [2.0, 4.0, 8.0, 16.0]),
        (DeviceClass.MOBILE, [1.0, 2.0]),
    ])
    async def test_retry_ceiling(self, sleeper, device_class, expected_delays):
        profile = dataclasses.replace(get_profile(device_class), chunk_size=100)
        transfer = ScriptedTransfer(lambda window, n: SERVER_ERROR)
        prober = ScriptedProber(lambda n: ProbeResult(ok=True, confirmed_bytes=0))
        sequencer = ChunkSequencer(transfer, prober, profile, sleep=sleeper)

        with pytest.raises(RetryBudgetExhaustedError) as exc_info:
            await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert len(transfer.windows) == profile.max_retries
        assert prober.calls == profile.max_retries
        assert exc_info.value.attempts == profile.max_retries
        assert exc_info.value.reason == RejectReason.SERVER_ERROR
        assert exc_info.value.confirmed_bytes == 0
        assert sleeper.delays == expected_delays
        assert sequencer.context.state == SequencerState.FAILED

    @pytest.mark.asyncio
    async def test_ambiguous_budget_keeps_last_concrete_reason(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=100)

        def script(window, n):
            return SERVER_ERROR if n == 1 else Ambiguous()

        sequencer = ChunkSequencer(ScriptedTransfer(script), ScriptedProber(), profile, sleep=sleeper)

        with pytest.raises(RetryBudgetExhaustedError) as exc_info:
            await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert exc_info.value.reason == RejectReason.SERVER_ERROR

    @pytest.mark.asyncio
    async def test_expired_session_is_fatal_and_carries_confirmed_bytes(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=100)

        def script(window, n):
            if n == 1:
                return landed(window)
            return Rejected(RejectReason.EXPIRED, False, 404, 'Not Found')

        transfer = ScriptedTransfer(script)
        prober = ScriptedProber(lambda n: ProbeResult.failed(404))
        sequencer = ChunkSequencer(transfer, prober, profile, sleep=sleeper)

        with pytest.raises(SessionExpiredError) as exc_info:
            await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert exc_info.value.confirmed_bytes == 100
        assert exc_info.value.status_code == 404
        assert len(transfer.windows) == 2
        assert prober.calls == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize('rejection', [
        Rejected(RejectReason.EXPIRED, False, 404, 'Not Found'),
        Rejected(RejectReason.PERMISSION_DENIED, False, 403, 'Forbidden'),
        Rejected(RejectReason.AUTH_FAILED, False, 401, 'Invalid Credentials'),
    ])
    async def test_fatal_rejection_on_last_window_is_trusted(self, desktop_profile, sleeper, rejection):
        # Accepted-risk path: the last window wins over the fatal rejection
        profile = dataclasses.replace(desktop_profile, chunk_size=400)

        def script(window, n):
            return rejection if window.is_last else landed(window)

        transfer = ScriptedTransfer(script)
        prober = ScriptedProber()
        sequencer = ChunkSequencer(transfer, prober, profile, sleep=sleeper)

        result = await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert result.confirmed_bytes == 1000
        assert result.trusted_ranges == ((800, 1000),)
        assert len(transfer.windows) == 3
        assert prober.calls == 1
        assert sequencer.context.state == SequencerState.COMPLETE

    @pytest.mark.asyncio
    async def test_fatal_rejection_before_trust_window_still_fails(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=400)
        transfer = ScriptedTransfer(lambda window, n: Rejected(RejectReason.PERMISSION_DENIED, False, 403))
        sequencer = ChunkSequencer(transfer, ScriptedProber(), profile, sleep=sleeper)

        with pytest.raises(PermissionDeniedError) as exc_info:
            await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert exc_info.value.confirmed_bytes == 0
        assert len(transfer.windows) == 1

    @pytest.mark.asyncio
    async def test_unreadable_file_fails_with_confirmed_bytes(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=400)
        # The file shrank to 600 bytes after its size was taken
        handle = FileHandle(io.BytesIO(bytes(600)), 1000)
        transfer = ScriptedTransfer()
        sequencer = ChunkSequencer(transfer, ScriptedProber(), profile, sleep=sleeper)

        with pytest.raises(UploadFailedError) as exc_info:
            await sequencer.run(handle, UPLOAD_TARGET)

        assert exc_info.value.confirmed_bytes == 400
        assert 'Short read' in exc_info.value.message
        assert len(transfer.windows) == 1
        assert sequencer.context.state == SequencerState.FAILED

    @pytest.mark.asyncio
    async def test_trust_mode_past_ninety_percent(self, desktop_profile, sleeper):
        # Accepted-risk path: window 900-949 is not last but 90% is confirmed
        profile = dataclasses.replace(desktop_profile, chunk_size=50)

        def script(window, n):
            return Ambiguous() if window.start_byte == 900 else landed(window)

        transfer = ScriptedTransfer(script)
        sequencer = ChunkSequencer(transfer, ScriptedProber(), profile, sleep=sleeper)

        result = await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert result.trusted_ranges == ((900, 950),)
        assert transfer.windows[-1] == TransferWindow(950, 999, 1000)
        assert sequencer.context.trusted_windows == 1

    @pytest.mark.asyncio
    async def test_no_trust_mode_below_ninety_percent(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=50)
        failures = []

        def script(window, n):
            if window.start_byte == 850 and not failures:
                failures.append(n)
                return Ambiguous()
            return landed(window)

        transfer = ScriptedTransfer(script)
        sequencer = ChunkSequencer(transfer, ScriptedProber(), profile, sleep=sleeper)

        result = await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert not result.trusted
        assert [w.start_byte for w in transfer.windows].count(850) == 2

    def test_trust_mode_applies(self):
        assert trust_mode_applies(TransferWindow(0, 999, 1000), 0)
        assert trust_mode_applies(TransferWindow(900, 949, 1000), 900)
        assert not trust_mode_applies(TransferWindow(850, 899, 1000), 850)


class TestProperties:
    """Invariants that hold for any sequence of outcomes."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize('seed', range(25))
    async def test_confirmed_bytes_never_decrease(self, desktop_profile, sleeper, seed):
        rng = random.Random(seed)
        total_size = rng.randint(1, 5000)
        profile = dataclasses.replace(desktop_profile, chunk_size=rng.randint(1, 1200), max_retries=8)

        def script(window, n):
            roll = rng.random()
            if roll < 0.5:
                return landed(window)
            if roll < 0.6:
                return Confirmed(rng.randint(0, window.end_exclusive))
            if roll < 0.8:
                return Ambiguous()
            return SERVER_ERROR

        def probe_script(n):
            if rng.random() < 0.3:
                return ProbeResult.failed()
            return ProbeResult(ok=True, confirmed_bytes=rng.randint(0, total_size))

        seen = []
        sequencer = ChunkSequencer(
            ScriptedTransfer(script),
            ScriptedProber(probe_script),
            profile,
            progress_sink=lambda snapshot: seen.append(snapshot.confirmed_bytes),
            sleep=sleeper,
        )

        try:
            result = await sequencer.run(VirtualFile(total_size), UPLOAD_TARGET)
        except RetryBudgetExhaustedError as e:
            assert e.confirmed_bytes == sequencer.context.confirmed_bytes
        else:
            assert result.confirmed_bytes == total_size
            assert_contiguous_cover(result.confirmed_ranges, total_size)

        assert seen == sorted(seen)
        assert all(0 <= value <= total_size for value in seen)

    @pytest.mark.asyncio
    async def test_mobile_windows_never_exceed_ten_mib(self, sleeper):
        profile = get_profile(DeviceClass.MOBILE, 70 * MIB)
        transfer = ScriptedTransfer()
        sequencer = ChunkSequencer(transfer, ScriptedProber(), profile, sleep=sleeper)

        await sequencer.run(VirtualFile(35 * MIB + 123), UPLOAD_TARGET)

        assert len(transfer.windows) == 4
        assert all(w.size <= 10 * MIB for w in transfer.windows)

    @pytest.mark.asyncio
    async def test_desktop_windows_use_configured_size(self, sleeper):
        profile = get_profile(DeviceClass.DESKTOP, 16 * MIB)
        transfer = ScriptedTransfer()
        sequencer = ChunkSequencer(transfer, ScriptedProber(), profile, sleep=sleeper)

        await sequencer.run(VirtualFile(50 * MIB), UPLOAD_TARGET)

        sizes = [w.size for w in transfer.windows]
        assert sizes == [16 * MIB, 16 * MIB, 16 * MIB, 2 * MIB]


class TestCancellationAndProgress:
    """Cancellation and progress reporting."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, desktop_profile, sleeper):
        transfer = ScriptedTransfer()
        sequencer = ChunkSequencer(transfer, ScriptedProber(), desktop_profile, sleep=sleeper)
        sequencer.cancel()

        with pytest.raises(UploadCancelledError):
            await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert transfer.windows == []
        assert sequencer.context.state == SequencerState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_aborts_inflight_transfer(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=100)
        started = asyncio.Event()
        aborted = []

        class HangingTransfer(ScriptedTransfer):
            async def transfer(self, window, chunk, upload_target, on_progress=None):
                if window.start_byte == 0:
                    return landed(window)
                started.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    aborted.append(window)
                    raise

        sequencer = ChunkSequencer(HangingTransfer(), ScriptedProber(), profile, sleep=sleeper)
        task = asyncio.create_task(sequencer.run(VirtualFile(1000), UPLOAD_TARGET))

        await asyncio.wait_for(started.wait(), timeout=5)
        sequencer.cancel()

        with pytest.raises(UploadCancelledError) as exc_info:
            await task

        assert exc_info.value.confirmed_bytes == 100
        assert aborted == [TransferWindow(100, 199, 1000)]
        assert sequencer.context.state == SequencerState.CANCELLED
        assert sequencer.context.in_flight_bytes == 0

    @pytest.mark.asyncio
    async def test_progress_snapshots(self, desktop_profile, sleeper):
        profile = dataclasses.replace(desktop_profile, chunk_size=400)

        def script(window, n):
            return SERVER_ERROR if n == 1 else landed(window)

        snapshots = []
        context = UploadRunContext(total_size=1000, device_class=DeviceClass.DESKTOP)
        sequencer = ChunkSequencer(
            ScriptedTransfer(script),
            ScriptedProber(lambda n: ProbeResult(ok=True, confirmed_bytes=0)),
            profile,
            context=context,
            progress_sink=snapshots.append,
            sleep=sleeper,
        )

        await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        statuses = [s.status for s in snapshots]
        states = {s.state for s in snapshots}
        assert 'VERIFYING...' in statuses
        assert 'RETRY 1/5...' in statuses
        assert 'UPLOADING... 0.0MB / 0.0MB' in statuses
        assert {SequencerState.SENDING, SequencerState.VERIFYING, SequencerState.RETRYING} <= states
        assert snapshots[-1].state == SequencerState.COMPLETE
        assert snapshots[-1].percent == 100.0
        assert context.confirmed_bytes == 1000

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_stop_upload(self, desktop_profile, sleeper):
        def sink(snapshot):
            raise RuntimeError("display gone")

        sequencer = ChunkSequencer(
            ScriptedTransfer(), ScriptedProber(), desktop_profile, progress_sink=sink, sleep=sleeper
        )

        result = await sequencer.run(VirtualFile(1000), UPLOAD_TARGET)

        assert result.confirmed_bytes == 1000
