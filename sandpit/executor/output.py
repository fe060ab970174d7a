"""
Output capture for one execution.

Reader threads pump stdout and stderr of the child process into an
``OutputCollector`` chunk by chunk. The collector keeps a combined byte
budget for both streams, forwards every accepted chunk to the emit
callback in arrival order, and silently drops whatever exceeds the
budget while still draining the pipes so the child never blocks.
"""
import codecs
import logging
import threading
from typing import BinaryIO, Callable, Dict, List, Optional

from sandpit.core.models import OutputChunk, StreamName

logger = logging.getLogger(__name__)

EmitCallback = Callable[[OutputChunk], None]

STDERR_TAIL_BYTES = 2048


class OutputCollector:
    def __init__(
        self,
        request_id: str,
        max_bytes: int,
        emit: Optional[EmitCallback] = None,
    ):
        self.request_id = request_id
        self.max_bytes = max_bytes
        self._emit = emit
        self._lock = threading.Lock()
        self._used = 0
        self._seq = 0
        self._truncated = False
        self._parts: Dict[StreamName, List[str]] = {StreamName.STDOUT: [], StreamName.STDERR: []}
        self._decoders = {
            name: codecs.getincrementaldecoder("utf-8")(errors="replace")
            for name in StreamName
        }
        self._stderr_tail = b""

    @property
    def truncated(self) -> bool:
        return self._truncated

    @property
    def bytes_used(self) -> int:
        return self._used

    def text(self, stream: StreamName) -> str:
        return "".join(self._parts[stream])

    @property
    def stderr_tail(self) -> str:
        """Last raw bytes of stderr, kept even past the budget for outcome classification."""
        return self._stderr_tail.decode("utf-8", errors="replace")

    def feed(self, stream: StreamName, data: bytes, final: bool = False) -> None:
        with self._lock:
            if stream == StreamName.STDERR and data:
                self._stderr_tail = (self._stderr_tail + data)[-STDERR_TAIL_BYTES:]
            room = self.max_bytes - self._used
            if len(data) > room:
                data = data[:max(room, 0)]
                self._truncated = True
            if self._truncated:
                # Drop a cut multi-byte sequence rather than emit U+FFFD.
                final = False
            self._used += len(data)
            text = self._decoders[stream].decode(data, final=final)
            if not text:
                return
            self._parts[stream].append(text)
            chunk = OutputChunk(self.request_id, stream, text, self._seq)
            self._seq += 1
            if self._emit is not None:
                self._emit(chunk)

    def pump(self, stream: StreamName, pipe: BinaryIO, chunk_size: int) -> None:
        """Read ``pipe`` until EOF. Runs on a reader thread."""
        try:
            while True:
                data = pipe.read1(chunk_size) if hasattr(pipe, "read1") else pipe.read(chunk_size)
                if not data:
                    break
                self.feed(stream, data)
            self.feed(stream, b"", final=True)
        except (OSError, ValueError) as e:
            # Pipe closed under us by a kill; whatever was read is kept.
            logger.debug(f"{stream.value} reader for {self.request_id} stopped: {e}")
        finally:
            pipe.close()

    def start_reader(self, stream: StreamName, pipe: BinaryIO, chunk_size: int) -> threading.Thread:
        thread = threading.Thread(
            target=self.pump,
            args=(stream, pipe, chunk_size),
            name=f"output-{stream.value}-{self.request_id[:8]}",
            daemon=True,
        )
        thread.start()
        return thread
