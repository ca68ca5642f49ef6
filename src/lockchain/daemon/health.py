"""
Health endpoint:
- Answers ``OK`` or ``DEGRADED: <reason>`` on health.bind
- Optionally advertises itself with Zeroconf (_lockchain._tcp.local.)

Protocol:
    GET / HTTP/1.x
    -> HTTP response, 200 when ready and 503 when degraded, body as below

    any other single line (e.g. HEALTH)
    -> OK | DEGRADED: <reason>
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Optional

from zeroconf import ServiceInfo, Zeroconf

from lockchain.core.models import HealthState

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_lockchain._tcp.local."
CLIENT_TIMEOUT = 5.0
MAX_REQUEST_LINE = 4096


def get_local_ip():
    """Address of the interface used for the default route."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 80))
        return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        s.close()


def render_response(request_line: str, state: HealthState) -> bytes:
    body = state.render()
    if request_line.upper().startswith("GET "):
        status = "200 OK" if state.ready else "503 Service Unavailable"
        payload = body.encode() + b"\n"
        head = (
            f"HTTP/1.1 {status}\r\n"
            "Content-Type: text/plain; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            "Connection: close\r\n\r\n"
        )
        return head.encode() + payload
    return body.encode() + b"\n"


class HealthServer:
    """Threaded TCP responder reporting the current HealthState."""

    def __init__(self, host: str, port: int, health: Callable[[], HealthState], advertise: bool = False):
        self.host = host
        self.port = port
        self.advertise = advertise
        self._health = health
        self._sock: Optional[socket.socket] = None
        self._should_stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._zeroconf = None
        self._info = None

    def start(self) -> None:
        """Bind and serve on a background thread; ``port`` 0 picks a free port."""
        s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((self.host, self.port))
        s.listen(5)
        s.settimeout(0.5)
        self._sock = s
        self.port = s.getsockname()[1]
        self._should_stop.clear()
        self._thread = threading.Thread(target=self._serve, name="health-server", daemon=True)
        self._thread.start()
        logger.info("health endpoint listening on %s:%d", self.host, self.port)
        if self.advertise:
            self._zeroconf, self._info = advertise_service(
                f"lockchain-{socket.gethostname()}", self.host, self.port
            )

    def stop(self) -> None:
        self._should_stop.set()
        if self._zeroconf is not None:
            try:
                self._zeroconf.unregister_service(self._info)
            finally:
                self._zeroconf.close()
                self._zeroconf = None
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        logger.info("health endpoint stopped")

    def _serve(self) -> None:
        while not self._should_stop.is_set():
            try:
                conn, addr = self._sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if not self._should_stop.is_set():
                    logger.error("unexpected error in health server loop: %s", e)
                break
            t = threading.Thread(target=self.handle_client, args=(conn, addr), daemon=True)
            t.start()

    def handle_client(self, conn, addr) -> None:
        conn.settimeout(CLIENT_TIMEOUT)
        try:
            data = b""
            while b"\n" not in data and len(data) < MAX_REQUEST_LINE:
                chunk = conn.recv(1024)
                if not chunk:
                    break
                data += chunk
            line = data.split(b"\n", 1)[0].decode("utf-8", "replace").strip()
            conn.sendall(render_response(line, self._health()))
        except (socket.timeout, OSError) as e:
            logger.debug("health request from %s failed: %s", addr, e)
        finally:
            conn.close()


def advertise_service(name, host, port, service=SERVICE_TYPE):
    """Advertise the health endpoint using Zeroconf."""
    zeroconf = Zeroconf()
    ip = get_local_ip() if host in ("", "0.0.0.0") else host
    info = ServiceInfo(
        service,
        f"{name}.{service}",
        addresses=[socket.inet_aton(ip)],
        port=port,
        properties={"name": name, "path": "/"},
        server=f"{socket.gethostname()}.local.",
    )
    zeroconf.register_service(info)
    logger.info("zeroconf service registered: %s @ %s:%d (%s)", name, ip, port, service)
    return zeroconf, info


def query_health(host: str, port: int, timeout: float = CLIENT_TIMEOUT) -> str:
    """Ask a running daemon for its health line."""
    with socket.create_connection((host, port), timeout=timeout) as s:
        s.sendall(b"HEALTH\n")
        data = b""
        while True:
            chunk = s.recv(1024)
            if not chunk:
                break
            data += chunk
    return data.decode("utf-8").strip()
