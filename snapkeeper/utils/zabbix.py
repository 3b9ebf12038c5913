"""
Minimal zabbix sender client.

See https://www.zabbix.com/documentation/current/manual/appendix/protocols/header_datalen

Request:  'ZBXD\\x01' + <uint32 LE payload length> + 4 zero bytes + JSON
Response: 'ZBXD\\x01' + <int64 LE payload length> + JSON {"response", "info"}
"""

import json
import socket
import struct
from dataclasses import dataclass, asdict
from typing import List

DEFAULT_PORT = 10051
ZABBIX_HEADER = b'ZBXD\x01'
MAX_RESPONSE_LENGTH = 65535


class ZabbixProtocolError(Exception):
    """Raised when the receiver's answer violates the protocol."""
    pass


@dataclass
class ZabbixItem:
    host: str
    key: str
    value: str


@dataclass
class ZabbixResponse:
    response: str
    info: str

    def __str__(self):
        return f"{self.response}: {self.info}"


def encode_request(items: List[ZabbixItem]) -> bytes:
    """Frame a 'sender data' request for the given items."""
    payload = json.dumps({
        'request': 'sender data',
        'data': [asdict(item) for item in items]
    }).encode('utf-8')
    return ZABBIX_HEADER + struct.pack('<I', len(payload)) + b'\x00' * 4 + payload


def _read_exactly(sock: socket.socket, length: int, what: str) -> bytes:
    data = b''
    while len(data) < length:
        chunk = sock.recv(length - len(data))
        if not chunk:
            raise ZabbixProtocolError(f"Received invalid zabbix {what} (message too short)")
        data += chunk
    return data


class ZabbixSender:
    """
    One-shot client: every send opens its own connection.
    """

    def __init__(self, server: str, port: int = DEFAULT_PORT, timeout: float = 30):
        self.server = server
        self.port = port
        self.timeout = timeout

    def send_items(self, items: List[ZabbixItem]) -> ZabbixResponse:
        """
        Send items to the zabbix server.

        Args:
            items: Values to report

        Returns:
            ZabbixResponse of the server

        Raises:
            ZabbixProtocolError: If the response header or payload is invalid
            OSError: If the connection fails
        """
        request = encode_request(items)

        with socket.create_connection((self.server, self.port), timeout=self.timeout) as sock:
            sock.settimeout(self.timeout)
            sock.sendall(request)

            if _read_exactly(sock, len(ZABBIX_HEADER), 'header') != ZABBIX_HEADER:
                raise ZabbixProtocolError("Received invalid zabbix-header")

            (length,) = struct.unpack('<q', _read_exactly(sock, 8, 'header'))
            if length < 0 or length > MAX_RESPONSE_LENGTH:
                raise ZabbixProtocolError(f"Received invalid zabbix-header (message length: {length})")

            message = _read_exactly(sock, length, 'message')

        try:
            response = json.loads(message.decode('utf-8'))
            return ZabbixResponse(response['response'], response['info'])
        except (ValueError, KeyError, TypeError) as e:
            raise ZabbixProtocolError(f"Received invalid zabbix message: {e}")
