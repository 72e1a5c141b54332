# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for the readiness probe.
"""
import struct
import time

import pytest

from dockit.MANAGERS.readiness_probe import ProbeOutcome, ReadinessProbe
from dockit.MODELS.build_config import ContainerStartSpec


def frame(text: str, stream: int = 1) -> bytes:
    payload = text.encode()
    return struct.pack(">BxxxL", stream, len(payload)) + payload


@pytest.fixture
def probe(client):
    return ReadinessProbe(client, interval=0.05)


def started(client, engine, **image) -> str:
    engine.add_image("svc:it", **image)
    container_id = client.create_container(ContainerStartSpec(id="svc", image="svc:it"))
    client.start_container(container_id)
    return container_id


def test_pattern_logged_immediately(client, engine, probe):
    container_id = started(client, engine, logs=[(0, frame("booting\n")), (0, frame("ready to accept connections\n"))])
    result = probe.await_pattern(container_id, r"ready to accept", time.monotonic() + 5)
    assert result.outcome == ProbeOutcome.READY
    assert result.ready
    assert "booting" in result.log_tail
    assert engine.open_streams == 0


def test_pattern_logged_later(client, engine, probe):
    container_id = started(client, engine, logs=[(0.2, frame("Started Application in 0.2 seconds\n", stream=2))])
    result = probe.await_pattern(container_id, r"Started \w+", time.monotonic() + 5)
    assert result.ready


def test_pattern_split_across_frames(client, engine, probe):
    container_id = started(client, engine, logs=[(0, frame("server list")), (0.05, frame("ening\n"))])
    assert probe.await_pattern(container_id, "listening", time.monotonic() + 5).ready


def test_timeout_while_engine_is_silent(client, engine, probe):
    container_id = started(client, engine, logs=[(0, frame("starting\n"))])
    begin = time.monotonic()
    result = probe.await_pattern(container_id, "never printed", begin + 0.3)
    elapsed = time.monotonic() - begin
    assert result.outcome == ProbeOutcome.TIMED_OUT
    assert 0.3 <= elapsed < 2
    # The follow request was released
    assert engine.open_streams == 0


def test_container_exits_before_ready(client, engine, probe):
    container_id = started(client, engine, logs=[(0, frame("fatal: no config\n"))], exit_code=3)
    result = probe.await_pattern(container_id, "ready", time.monotonic() + 5)
    assert result.outcome == ProbeOutcome.CONTAINER_EXITED
    assert result.exit_code == 3
    assert "fatal: no config" in result.log_tail


def test_deadline_already_passed(client, engine, probe):
    container_id = started(client, engine)
    result = probe.await_pattern(container_id, "ready", time.monotonic() - 1)
    assert result.outcome == ProbeOutcome.TIMED_OUT
    assert engine.paths("GET") == []


def test_buffer_keeps_only_the_tail(client, engine):
    probe = ReadinessProbe(client, interval=0.05, max_buffer=16)
    container_id = started(client, engine, logs=[(0, frame("x" * 100 + "ready\n"))])
    result = probe.await_pattern(container_id, "ready", time.monotonic() + 5)
    assert result.ready
    assert len(result.log_tail) == 16
