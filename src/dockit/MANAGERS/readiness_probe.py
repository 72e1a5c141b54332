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
Readiness detection for containers, by waiting for a pattern to show up in
their log output.
"""
import logging
import queue
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Pattern, Tuple, Union

from ..ENGINE.engine_client import EngineClient
from ..ENGINE.log_stream import LogStream

logger = logging.getLogger(__name__)

_END = object()


class ProbeOutcome(str, Enum):
    """How a wait for readiness ended."""

    READY = "ready"
    TIMED_OUT = "timed_out"
    CONTAINER_EXITED = "container_exited"


@dataclass
class ProbeResult:
    """Outcome of a readiness wait."""

    outcome: ProbeOutcome
    exit_code: Optional[int] = None
    log_tail: str = ""

    @property
    def ready(self) -> bool:
        return self.outcome == ProbeOutcome.READY


class ReadinessProbe:
    """
    Waits until a container logs a line matching a regular expression.

    The log is read by a worker thread and handed over through a queue, so
    the wait can give up at its deadline even while the engine sends nothing.
    Only the last ``max_buffer`` characters of output are kept for matching.
    """

    MAX_BUFFER = 64 * 1024
    JOIN_TIMEOUT = 2.0

    def __init__(
        self,
        client: EngineClient,
        interval: float = 0.5,
        max_buffer: int = MAX_BUFFER,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initializes the probe.

        :param client: Engine client used to read logs and inspect containers.
        :param interval: Upper bound in seconds on how late a deadline is noticed.
        :param max_buffer: Number of trailing log characters kept for matching.
        :param clock: Monotonic clock the deadline refers to.
        """
        self.client = client
        self.interval = interval
        self.max_buffer = max_buffer
        self.clock = clock

    def await_pattern(
        self, container_id: str, pattern: Union[str, Pattern], deadline: float
    ) -> ProbeResult:
        """
        Blocks until the pattern matches, the deadline passes or the container exits.

        :param container_id: Engine id of a started container.
        :param pattern: Regular expression searched for in stdout and stderr.
        :param deadline: Point in time, on ``clock``, to give up at.
        :return: The outcome of the wait.
        """
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        logger.info(f"Waiting for {container_id[:12]} to log '{regex.pattern}'")
        tail = ""
        while self.clock() < deadline:
            stream = self.client.stream_logs(container_id, follow=True)
            outcome, tail = self._watch(stream, regex, deadline)
            if outcome is not None:
                return ProbeResult(outcome, log_tail=tail)

            # Log stream ended, which the engine does when the container stops
            state = self.client.inspect_container(container_id)
            if not state.running:
                logger.warning(
                    f"Container {container_id[:12]} exited with code {state.exit_code} before it was ready"
                )
                return ProbeResult(ProbeOutcome.CONTAINER_EXITED, exit_code=state.exit_code, log_tail=tail)
            logger.debug(f"Log stream of {container_id[:12]} dropped, reopening")
            time.sleep(max(0.0, min(self.interval, deadline - self.clock())))

        return ProbeResult(ProbeOutcome.TIMED_OUT, log_tail=tail)

    def _watch(
        self, stream: LogStream, regex: Pattern, deadline: float
    ) -> Tuple[Optional[ProbeOutcome], str]:
        """
        Reads one log stream until a match, the deadline, or its end.

        :return: The outcome, or None if the stream ended first, and the log tail.
        """
        chunks: "queue.Queue" = queue.Queue()

        def read():
            try:
                for text in stream:
                    chunks.put(text)
            except Exception as e:
                chunks.put(e)
            finally:
                chunks.put(_END)

        reader = threading.Thread(
            target=read, name=f"logs-{stream.container_id[:12]}", daemon=True
        )
        reader.start()
        buffer = ""
        try:
            while True:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    logger.warning(f"Gave up waiting for {stream.container_id[:12]}")
                    return ProbeOutcome.TIMED_OUT, buffer
                try:
                    item = chunks.get(timeout=min(self.interval, remaining))
                except queue.Empty:
                    continue
                if item is _END:
                    return None, buffer
                if isinstance(item, Exception):
                    raise item
                buffer = (buffer + item)[-self.max_buffer:]
                if regex.search(buffer):
                    logger.info(f"Container {stream.container_id[:12]} is ready")
                    return ProbeOutcome.READY, buffer
        finally:
            stream.close()
            reader.join(timeout=max(self.interval, self.JOIN_TIMEOUT))
            if reader.is_alive():
                logger.warning(f"Log reader of {stream.container_id[:12]} did not stop after close")
