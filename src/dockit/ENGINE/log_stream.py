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
Decoding of container log streams.

The engine multiplexes stdout and stderr of a container without a TTY into
frames: an 8-byte header ``{stream, 0, 0, 0, size (4 bytes, big endian)}``
followed by ``size`` bytes of payload. Containers started with a TTY send
their output raw.
"""
import codecs
import logging
import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterator, List

import httpx

from .errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)


class StreamType(IntEnum):
    """Stream a log frame belongs to."""

    STDIN = 0
    STDOUT = 1
    STDERR = 2


@dataclass(frozen=True)
class LogFrame:
    """A single payload of log output."""

    stream: StreamType
    payload: bytes


class FrameDecoder:
    """
    Incremental decoder for the multiplexed log format.
    Frames may be split across any number of network chunks.
    """
    HEADER_SIZE = 8
    _HEADER = struct.Struct(">BxxxL")

    def __init__(self):
        self._buffer = bytearray()
        self._raw = None

    @property
    def raw(self) -> bool:
        """True once the stream turned out not to be multiplexed."""
        return bool(self._raw)

    @property
    def pending(self) -> int:
        """Number of buffered bytes that do not form a complete frame yet."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[LogFrame]:
        """
        Adds bytes read from the stream and returns the completed frames.

        :param data: The next chunk read from the engine.
        :return: Frames completed by this chunk, in stream order.
        """
        if not data:
            return []
        if self._raw:
            return [LogFrame(StreamType.STDOUT, bytes(data))]

        self._buffer.extend(data)
        if self._raw is None:
            if not self._detect_format():
                return []
            if self._raw:
                payload = bytes(self._buffer)
                self._buffer.clear()
                return [LogFrame(StreamType.STDOUT, payload)]

        frames = []
        while len(self._buffer) >= self.HEADER_SIZE:
            stream, size = self._HEADER.unpack_from(self._buffer)
            if stream > StreamType.STDERR:
                raise ProtocolError(f"Invalid log frame header, stream type {stream}")
            end = self.HEADER_SIZE + size
            if len(self._buffer) < end:
                break
            payload = bytes(self._buffer[self.HEADER_SIZE:end])
            del self._buffer[:end]
            frames.append(LogFrame(StreamType(stream), payload))
        return frames

    def _detect_format(self) -> bool:
        """
        Decides between multiplexed and raw output from the first bytes.

        :return: False while there are not enough bytes to decide.
        """
        if self._buffer[0] not in (0, 1, 2):
            self._raw = True
            return True
        if len(self._buffer) < 4:
            return False
        self._raw = self._buffer[1:4] != b"\x00\x00\x00"
        return True


class LogStream:
    """
    Handle on a following log request. Iterating yields decoded text chunks.

    ``close()`` may be called from another thread while a reader is blocked;
    it releases the HTTP connection and makes the iteration end quietly.
    """

    def __init__(self, response: httpx.Response, container_id: str):
        self.container_id = container_id
        self._response = response
        self._decoder = FrameDecoder()
        self._text: Dict[StreamType, codecs.IncrementalDecoder] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[str]:
        try:
            for chunk in self._response.iter_raw():
                for frame in self._decoder.feed(chunk):
                    text = self._decode(frame)
                    if text:
                        yield text
        except (httpx.HTTPError, httpx.StreamError, OSError) as e:
            if self._closed:
                logger.debug(f"Log stream of {self.container_id} closed: {e}")
                return
            raise TransportError(f"Log stream of container {self.container_id} broke", e)
        if self._decoder.pending and not self._closed:
            logger.warning(
                f"Log stream of {self.container_id} ended inside a frame, "
                f"dropping {self._decoder.pending} bytes"
            )

    def _decode(self, frame: LogFrame) -> str:
        decoder = self._text.get(frame.stream)
        if decoder is None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            self._text[frame.stream] = decoder
        return decoder.decode(frame.payload)

    def close(self):
        """Stops following the log and releases the connection."""
        if self._closed:
            return
        self._closed = True
        self._shutdown_socket()
        self._response.close()

    def _shutdown_socket(self) -> None:
        # Closing the response alone does not wake a reader blocked in recv()
        if self._response.is_closed:
            # Fully read, the connection is back in the pool
            return
        network_stream = self._response.extensions.get("network_stream")
        if network_stream is None:
            return
        sock = network_stream.get_extra_info("socket")
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Socket of log stream {self.container_id} already closed: {e}")

    def __enter__(self) -> "LogStream":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
