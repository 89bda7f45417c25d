"""Container log streaming.

Docker multiplexes stdout and stderr of a non-TTY container over a single
byte stream. Every frame starts with an 8 byte header: one stream selector
byte, three reserved bytes and a big-endian uint32 payload length. The
payload follows. Chunks coming off the socket are not aligned to frames, so
the demuxer keeps whatever it could not resolve yet and retries once more
bytes arrive.

``LogBridge`` turns the decoded payloads into server-sent events for the
browser, sends a comment every few seconds so proxies keep the connection
open, and tears everything down on end, error or client disconnect.
"""
import json
import logging
import queue
import struct
import threading
from collections import namedtuple

log = logging.getLogger(__name__)

HEADER_SIZE = 8
_HEADER = struct.Struct('>BxxxL')
SELECTORS = {0: 'stdin', 1: 'stdout', 2: 'stderr'}

END_MESSAGE = '\n--- Container stream ended ---\n'
KEEPALIVE_COMMENT = 'heartbeat'
DEFAULT_KEEPALIVE = 15.0


class Frame(namedtuple('Frame', ['selector', 'payload'])):
    __slots__ = ()

    @property
    def stream(self):
        return SELECTORS.get(self.selector, 'stdout')

    @property
    def length(self):
        return len(self.payload)

    @property
    def text(self):
        return self.payload.decode('utf-8', errors='replace')


class FrameDemuxer:
    """Reassembles frames across arbitrary chunk boundaries.

    The leftover buffer never holds a complete frame after ``feed`` returns.
    """

    def __init__(self):
        self._buf = bytearray()

    @property
    def pending(self):
        return len(self._buf)

    def feed(self, chunk):
        buf = self._buf
        buf += chunk
        frames = []
        offset = 0
        while len(buf) - offset >= HEADER_SIZE:
            selector, length = _HEADER.unpack_from(buf, offset)
            end = offset + HEADER_SIZE + length
            if end > len(buf):
                break
            frames.append(Frame(selector, bytes(buf[offset + HEADER_SIZE:end])))
            offset = end
        if offset:
            del buf[:offset]
        return frames

    def discard(self):
        # a partial trailing frame at end of stream is dropped without notice
        self._buf.clear()


def demux(chunks):
    """Lazily yield decoded payload text for an iterable of raw chunks."""
    demuxer = FrameDemuxer()
    for chunk in chunks:
        for frame in demuxer.feed(chunk):
            yield frame.text
    demuxer.discard()


def sse_data(payload):
    return f"data: {json.dumps(payload)}\n\n"


def sse_comment(text):
    return f": {text}\n\n"


def _thread_call_later(delay, fn):
    t = threading.Timer(delay, fn)
    t.daemon = True
    t.start()
    return t


class LogBridge:
    """Pushes one upstream log stream to one consumer as SSE blocks.

    ``send`` receives formatted event blocks and ``close`` ends the outbound
    channel. ``call_later(delay, fn)`` must return an object with ``cancel()``.
    Exactly one of end event, error event or silent cancel happens per bridge.
    """

    def __init__(self, source, send, close, keepalive_interval=DEFAULT_KEEPALIVE, call_later=None):
        self._source = source
        self._send = send
        self._close = close
        self._interval = keepalive_interval
        self._call_later = call_later or _thread_call_later
        self._demux = FrameDemuxer()
        self._lock = threading.RLock()
        self._timer = None
        self._opened = False
        self._closed = False
        self._released = False

    @property
    def closed(self):
        return self._closed

    def open(self):
        with self._lock:
            if self._opened or self._closed:
                return
            self._opened = True
            self._arm()
        try:
            for chunk in self._source:
                with self._lock:
                    if self._closed:
                        return
                    for frame in self._demux.feed(chunk):
                        self._send(sse_data({'text': frame.text}))
        except Exception as e:
            if self._finish(sse_data({'error': str(e) or e.__class__.__name__})):
                log.warning('log stream failed: %s', e)
            return
        self._finish(sse_data({'text': END_MESSAGE}))

    def cancel(self):
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._stop_timer()
        self._release()
        return True

    def _finish(self, event):
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._stop_timer()
            self._demux.discard()
            self._send(event)
            self._close()
        self._release()
        return True

    def _arm(self):
        self._timer = self._call_later(self._interval, self._tick)

    def _tick(self):
        with self._lock:
            if self._closed:
                return
            self._send(sse_comment(KEEPALIVE_COMMENT))
            self._arm()

    def _stop_timer(self):
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _release(self):
        with self._lock:
            if self._released:
                return
            self._released = True
        close = getattr(self._source, 'close', None)
        if close is None:
            return
        try:
            close()
        except Exception as e:
            log.debug('closing log source failed: %s', e)


_EOF = object()


def stream_events(source, keepalive_interval=DEFAULT_KEEPALIVE, call_later=None):
    """Generator body for a Flask ``text/event-stream`` response.

    The bridge runs on its own thread and hands blocks over through a queue.
    When the WSGI server closes the generator (client went away) the bridge
    is cancelled and the upstream handle released.
    """
    events = queue.Queue()
    bridge = LogBridge(source, events.put, lambda: events.put(_EOF),
                       keepalive_interval=keepalive_interval, call_later=call_later)
    threading.Thread(target=bridge.open, name='log-bridge', daemon=True).start()
    try:
        yield sse_comment('connected')
        while True:
            item = events.get()
            if item is _EOF:
                break
            yield item
    finally:
        bridge.cancel()
