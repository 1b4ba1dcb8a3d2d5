from __future__ import annotations

from pathlib import Path
import sys
from typing import List
from unittest.mock import MagicMock

import grpc
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import stability_client
from stability_client import generation


class FakeRpcError(grpc.RpcError):
    pass


class FakeCallError(grpc.RpcError, grpc.Call):
    """A failed call carrying a status, like the errors grpc raises mid-stream."""

    def __init__(self, code: grpc.StatusCode, details: str) -> None:
        super().__init__(details)
        self._code = code
        self._details = details

    def code(self) -> grpc.StatusCode:
        return self._code

    def details(self) -> str:
        return self._details

    def initial_metadata(self):
        return ()

    def trailing_metadata(self):
        return ()

    def is_active(self) -> bool:
        return False

    def time_remaining(self):
        return None

    def cancel(self) -> bool:
        return False

    def add_callback(self, callback) -> bool:
        return False


class _FakeStub:
    def __init__(self, transport: "FakeTransport") -> None:
        self._transport = transport

    def Generate(self, request, timeout=None):
        self._transport.requests.append(request)
        self._transport.timeouts.append(timeout)
        return self._stream(list(self._transport.script))

    @staticmethod
    def _stream(script):
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item


class FakeTransport:
    """Stands in for the grpc channel, its readiness future and the stub."""

    def __init__(self) -> None:
        self.script: List[object] = []
        self.fail_connect = False
        self.dialled: List[str] = []
        self.channels: List[MagicMock] = []
        self.stubs: List[_FakeStub] = []
        self.requests: List[generation.Request] = []
        self.timeouts: List[object] = []

    def secure_channel(self, target, credentials, options=None):
        self.dialled.append(target)
        channel = MagicMock(name=f"channel-{len(self.channels)}")
        self.channels.append(channel)
        return channel

    def channel_ready_future(self, channel):
        future = MagicMock()
        if self.fail_connect:
            future.result.side_effect = grpc.FutureTimeoutError()
        return future

    def make_stub(self, channel):
        stub = _FakeStub(self)
        self.stubs.append(stub)
        return stub


def make_answer(artifact_count: int, answer_id: str = "") -> generation.Answer:
    artifacts = [
        generation.Artifact(
            id=i,
            type=generation.ARTIFACT_IMAGE,
            mime="image/png",
            binary=b"\x89PNG" + bytes([i]),
        )
        for i in range(artifact_count)
    ]
    return generation.Answer(answer_id=answer_id, artifacts=artifacts)


@pytest.fixture()
def transport(monkeypatch: pytest.MonkeyPatch) -> FakeTransport:
    fake = FakeTransport()
    monkeypatch.setattr(stability_client.grpc, "secure_channel", fake.secure_channel)
    monkeypatch.setattr(stability_client.grpc, "channel_ready_future", fake.channel_ready_future)
    monkeypatch.setattr(stability_client.generation_grpc, "GenerationServiceStub", fake.make_stub)
    return fake
