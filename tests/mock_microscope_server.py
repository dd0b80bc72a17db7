# Mock acquisition server for testing
"""
Threaded mock of the microscope acquisition server.

Speaks the line protocol: one request line in, at most one reply line out.
Binds an ephemeral port by default and can be stopped and restarted on the
same port to exercise reconnection. Besides the real verbs it understands
``echo --tag <text>``, which replies with the tag so concurrent callers can
check that every reply reached the thread that asked for it.
"""

import logging
import random
import socket
import threading
import time

from py2scope.core.errors import ProtocolError
from py2scope.core.message_encoder import parse_float_list, parse_message

logger = logging.getLogger(__name__)

# Marks a request after which the server closes the connection
_CLOSE = object()

# Verbs never hit by injected errors
_NOT_INJECTED = {'config', 'quitclnt', 'shutdown', 'echo'}


def wait_for(predicate, timeout=2.0, interval=0.01):
    """Poll ``predicate`` until it is true or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class SimulatedAcquisition:
    """
    Acquisition that advances one tile per status poll.

    A manual focus checkpoint holds the acquisition at ``manual_focus_at``
    until it is answered with ackmf or skipaf.
    """

    def __init__(self, total_tiles=5, manual_focus_at=None, manual_focus_retries=2,
                 fail_at=None, stalled=False, progress_in_status=True,
                 final_z=1234.5, final_exposures=None):
        self.total_tiles = total_tiles
        self.manual_focus_at = manual_focus_at
        self.manual_focus_retries = manual_focus_retries
        self.fail_at = fail_at
        self.stalled = stalled
        self.progress_in_status = progress_in_status
        self.final_z = final_z
        self.final_exposures = dict(final_exposures or {-5.0: 120.0, 0.0: 250.0})

        self.current = 0
        self.awaiting_focus = False
        self.focus_answers = []
        self.cancel_requested = False
        self.cancelled = False

    def status(self):
        if self.cancelled:
            return "CANCELLED"
        if self.cancel_requested:
            self.cancelled = True
            return "CANCELLING"

        if not (self.awaiting_focus or self.stalled) and self.current < self.total_tiles:
            self.current += 1
            if self.current == self.manual_focus_at and not self.focus_answers:
                self.awaiting_focus = True

        if self.fail_at is not None and self.current >= self.fail_at:
            return "FAILED: simulated hardware fault"
        if self.current >= self.total_tiles and not self.awaiting_focus:
            exposures = ",".join(f"{a}={e}" for a, e in self.final_exposures.items())
            return (f"COMPLETED|progress:{self.current}/{self.total_tiles}"
                    f"|final_z:{self.final_z}|final_exposures:{exposures}")
        if self.progress_in_status:
            return f"RUNNING|progress:{self.current}/{self.total_tiles}"
        return "RUNNING"

    def progress(self):
        return f"{self.current}/{self.total_tiles}"

    def manual_focus(self):
        if self.awaiting_focus:
            return f"NEEDED{self.manual_focus_retries}"
        return "IDLE"

    def answer_focus(self, answer):
        if not self.awaiting_focus:
            return "ERROR: manual focus not requested"
        self.awaiting_focus = False
        self.focus_answers.append(answer)
        return "ACK"


class MockMicroscopeServer:
    """Mock acquisition server for testing."""

    def __init__(self, host='127.0.0.1', port=0, error_rate=0.0, seed=None):
        self.host = host
        self.port = port
        self.error_rate = error_rate
        self._rng = random.Random(seed)
        self.running = False

        # Simulated hardware
        self.x, self.y, self.z, self.r = 100.5, 200.7, 50.0, 0.0
        self.fov = (518.4, 388.8)

        # Test controls
        self.silent_verbs = set()
        self.reject_config = False
        self.acquisition_options = {}

        # Observations
        self.received = []
        self.config_paths = []
        self.connections = 0
        self.shutdown_requests = 0
        self.acquisition = None
        self.last_start_args = None

        self._lock = threading.RLock()
        self._listener = None
        self._accept_thread = None
        self._clients = []

    # ========== Lifecycle ==========

    def start(self):
        """Start accepting connections."""
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind((self.host, self.port))
        self._listener.listen(5)
        self._listener.settimeout(0.05)
        self.port = self._listener.getsockname()[1]
        self.running = True

        self._accept_thread = threading.Thread(target=self._accept_loop, daemon=True)
        self._accept_thread.start()
        logger.info(f"Mock server started on {self.host}:{self.port}")
        return self

    def stop(self):
        """Stop the server and drop every client connection."""
        self.running = False
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        with self._lock:
            clients, self._clients = self._clients, []
        for conn in clients:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already closed by the client
            conn.close()
        if self._accept_thread is not None:
            self._accept_thread.join(timeout=1.0)
            self._accept_thread = None
        logger.info("Mock server stopped")

    def restart(self):
        """Start again on the same port."""
        self.stop()
        return self.start()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def send_unsolicited(self, text):
        """Write a line nobody asked for to every connected client."""
        with self._lock:
            clients = list(self._clients)
        for conn in clients:
            conn.sendall((text + "\n").encode("utf-8"))

    def verbs_received(self):
        with self._lock:
            return [line.split(' ', 1)[0] for line in self.received]

    # ========== Connection handling ==========

    def _accept_loop(self):
        listener = self._listener
        while self.running:
            try:
                conn, addr = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(None)
            with self._lock:
                self._clients.append(conn)
                self.connections += 1
            logger.info(f"Connection from {addr}")
            threading.Thread(target=self._serve_client, args=(conn,), daemon=True).start()

    def _serve_client(self, conn):
        buffer = b""
        try:
            while self.running:
                try:
                    data = conn.recv(4096)
                except OSError:
                    break
                if not data:
                    break
                buffer += data
                while b"\n" in buffer:
                    raw, buffer = buffer.split(b"\n", 1)
                    line = raw.decode("utf-8").strip()
                    if not line:
                        continue
                    reply = self.handle_line(line)
                    if reply is _CLOSE:
                        return
                    if reply is not None:
                        conn.sendall((reply + "\n").encode("utf-8"))
        except OSError as e:
            logger.debug(f"Client connection ended: {e}")
        finally:
            with self._lock:
                if conn in self._clients:
                    self._clients.remove(conn)
            conn.close()

    # ========== Request dispatch ==========

    def handle_line(self, line):
        """Return the reply for one request line, None for no reply."""
        with self._lock:
            self.received.append(line)
        try:
            verb, args = parse_message(line)
        except ProtocolError:
            return "ERROR: malformed request"

        if verb in self.silent_verbs:
            return None

        with self._lock:
            if (verb not in _NOT_INJECTED and self.error_rate
                    and self._rng.random() < self.error_rate):
                return "ERROR: injected failure"
            handler = getattr(self, f"_do_{verb}", None)
            if handler is None:
                return f"ERROR: unknown command {verb}"
            return handler(args)

    def _do_echo(self, args):
        return args.get('tag') or "ERROR: missing --tag"

    def _do_config(self, args):
        if self.reject_config:
            return "ERROR: configuration file not found"
        self.config_paths.append(args.get('yaml'))
        return "ACK"

    def _do_quitclnt(self, args):
        return _CLOSE

    def _do_shutdown(self, args):
        self.shutdown_requests += 1
        return _CLOSE

    def _do_getxy(self, args):
        return f"{self.x} {self.y}"

    def _do_getz(self, args):
        return f"{self.z}"

    def _do_getr(self, args):
        return f"{self.r}"

    def _do_getfov(self, args):
        return f"{self.fov[0]} {self.fov[1]}"

    def _do_move(self, args):
        try:
            self.x, self.y = float(args['x']), float(args['y'])
        except (KeyError, TypeError, ValueError):
            return "ERROR: move needs --x and --y"
        return "ACK"

    def _do_move_z(self, args):
        try:
            self.z = float(args['z'])
        except (KeyError, TypeError, ValueError):
            return "ERROR: move_z needs --z"
        return "ACK"

    def _do_move_r(self, args):
        try:
            self.r = float(args['angle'])
        except (KeyError, TypeError, ValueError):
            return "ERROR: move_r needs --angle"
        return "ACK"

    def _do_acquire(self, args):
        self.last_start_args = args
        self.acquisition = SimulatedAcquisition(**self.acquisition_options)
        return "STARTED"

    def _do_bgacquir(self, args):
        self.last_start_args = args
        options = dict(self.acquisition_options)
        if args.get('angles') and args.get('exposures'):
            angles = parse_float_list(args['angles'])
            exposures = parse_float_list(args['exposures'])
            options.setdefault('final_exposures', dict(zip(angles, exposures)))
        self.acquisition = SimulatedAcquisition(**options)
        return f"STARTED:{args.get('output')}"

    def _do_status(self, args):
        if self.acquisition is None:
            return "IDLE"
        return self.acquisition.status()

    def _do_progress(self, args):
        if self.acquisition is None:
            return "0/0"
        return self.acquisition.progress()

    def _do_reqmanf(self, args):
        if self.acquisition is None:
            return "IDLE"
        return self.acquisition.manual_focus()

    def _do_ackmf(self, args):
        if self.acquisition is None:
            return "ERROR: no acquisition running"
        return self.acquisition.answer_focus('retry')

    def _do_skipaf(self, args):
        if self.acquisition is None:
            return "ERROR: no acquisition running"
        return self.acquisition.answer_focus('skip')

    def _do_cancel(self, args):
        if self.acquisition is not None:
            self.acquisition.cancel_requested = True
        return "ACK"


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    server = MockMicroscopeServer(port=5000)
    server.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        server.stop()
