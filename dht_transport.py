"""
UDP transport for the sniffer: fire-and-forget sends and a receive loop that
never lets one bad datagram stop it.
"""

import logging
import socket
import threading
from typing import Any, Callable, Optional, Tuple

import bencodepy

log = logging.getLogger(__name__)

Address = Tuple[str, int]

RECV_BUFFER = 65536
RECV_TIMEOUT = 0.5            # how often the receive loop re-checks its stop flag


class UDPTransport:
    def __init__(self, host: str, port: int, sock: Optional[socket.socket] = None,
                 timeout: float = RECV_TIMEOUT):
        if sock is None:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            try:
                sock.bind((host, port))
            except OSError:
                sock.close()
                raise
        sock.settimeout(timeout)
        self.sock = sock
        self.closed = False

    @property
    def address(self) -> Address:
        return self.sock.getsockname()[:2]

    def send(self, msg: dict, address: Address) -> bool:
        try:
            self.sock.sendto(bencodepy.encode(msg), address)
        except (OSError, TypeError, ValueError) as e:
            log.debug("[send-fail] %s:%s %s", address[0], address[1], e)
            return False
        return True

    def receive_loop(self, handler: Callable[[Any, Address], None], stop: threading.Event):
        while not stop.is_set():
            try:
                data, addr = self.sock.recvfrom(RECV_BUFFER)
            except socket.timeout:
                continue
            except OSError as e:
                if self.closed:
                    break
                log.debug("[recv-fail] %s", e)
                continue

            try:
                msg = bencodepy.decode(data)
            except bencodepy.BencodeDecodeError:
                log.debug("undecodable datagram from %s:%s (%d bytes)", addr[0], addr[1], len(data))
                continue

            try:
                handler(msg, addr[:2])
            except Exception:
                log.debug("handler failed for datagram from %s:%s", addr[0], addr[1], exc_info=True)

    def close(self):
        self.closed = True
        self.sock.close()
