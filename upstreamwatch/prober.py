"""TCP reachability probe for a single upstream."""

import logging
import socket
import threading
import time

from .models import HealthStatus, ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 3000

TIMEOUT_MESSAGE = "Connection timed out"


class _ConnectAttempt:
    """One connection attempt running on its own daemon thread.

    ``socket.create_connection`` only bounds the connect itself; name
    resolution can block for much longer. Running the attempt on a worker
    lets the caller stop waiting at the deadline. Whichever of "worker
    finished" and "caller gave up" takes the lock first decides the outcome;
    the loser's result is discarded.
    """

    def __init__(self, server: str, port: int, timeout_s: float) -> None:
        self._server = server
        self._port = port
        self._timeout_s = timeout_s
        self._lock = threading.Lock()
        self._finished = threading.Event()
        self._abandoned = False
        self.error: OSError | None = None

    def start(self) -> None:
        thread = threading.Thread(
            target=self._run,
            name=f"probe-{self._server}:{self._port}",
            daemon=True,
        )
        thread.start()

    def _run(self) -> None:
        error: OSError | None = None
        try:
            sock = socket.create_connection((self._server, self._port), timeout=self._timeout_s)
        except OSError as e:
            error = e
        else:
            # Reachability only: nothing is sent or read.
            sock.close()

        with self._lock:
            if self._abandoned:
                logger.debug("Discarding late probe result for %s:%d", self._server, self._port)
                return
            self.error = error
            self._finished.set()

    def wait(self, timeout_s: float) -> bool:
        """Wait for the attempt. Returns False if it lost the race to the deadline."""
        self._finished.wait(timeout_s)
        with self._lock:
            if self._finished.is_set():
                return True
            self._abandoned = True
            return False


def _describe_error(error: OSError) -> str:
    """Turn a socket error into a short human readable message."""
    if isinstance(error, TimeoutError):
        return TIMEOUT_MESSAGE
    if isinstance(error, socket.gaierror):
        return f"DNS resolution failed: {error.strerror or error}"
    if isinstance(error, ConnectionRefusedError):
        return "Connection refused"
    return str(error) or error.__class__.__name__


def probe(server: str, port: int, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ProbeResult:
    """Check whether a TCP connection to ``server:port`` can be opened.

    The connection is closed as soon as it is established. Refused
    connections, DNS failures and timeouts all mark the upstream down; the
    probe never raises and never waits much longer than ``timeout_ms``.

    Args:
        server: Hostname or IP address.
        port: TCP port.
        timeout_ms: Deadline for the whole probe, name resolution included.

    Returns:
        ProbeResult with the elapsed time in milliseconds and, when down,
        an error message.
    """
    timeout_s = timeout_ms / 1000
    start = time.monotonic()

    attempt = _ConnectAttempt(server, port, timeout_s)
    try:
        attempt.start()
    except RuntimeError as e:
        # Thread creation can fail under resource exhaustion
        elapsed_ms = int((time.monotonic() - start) * 1000)
        return ProbeResult(status=HealthStatus.DOWN, response_ms=elapsed_ms, error=f"Probe failed to start: {e}")

    completed = attempt.wait(timeout_s)
    elapsed_ms = int((time.monotonic() - start) * 1000)

    if not completed:
        return ProbeResult(status=HealthStatus.DOWN, response_ms=elapsed_ms, error=TIMEOUT_MESSAGE)

    if attempt.error is not None:
        return ProbeResult(
            status=HealthStatus.DOWN,
            response_ms=elapsed_ms,
            error=_describe_error(attempt.error),
        )

    return ProbeResult(status=HealthStatus.UP, response_ms=elapsed_ms)
