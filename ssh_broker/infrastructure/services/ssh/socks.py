"""
SOCKS request parsing and reply building for dynamic tunnels.

Only what a forwarding proxy needs: the SOCKS5 no-authentication method
with CONNECT (IPv4, domain and IPv6 addresses) and SOCKS4/4a CONNECT.
"""

import asyncio
import socket
from dataclasses import dataclass
from typing import Any, Optional

SOCKS4_VERSION = 4
SOCKS5_VERSION = 5

CMD_CONNECT = 1

# SOCKS5 methods
METHOD_NO_AUTH = 0x00
METHOD_NO_ACCEPTABLE = 0xFF

# SOCKS5 address types
ATYP_IPV4 = 1
ATYP_DOMAIN = 3
ATYP_IPV6 = 4

# SOCKS5 reply codes
REP_SUCCEEDED = 0x00
REP_GENERAL_FAILURE = 0x01
REP_HOST_UNREACHABLE = 0x04
REP_COMMAND_NOT_SUPPORTED = 0x07
REP_ADDRESS_TYPE_NOT_SUPPORTED = 0x08

# SOCKS4 reply codes
SOCKS4_GRANTED = 0x5A
SOCKS4_REJECTED = 0x5B

MAX_USERID_LENGTH = 255


class SocksError(Exception):
    """A request that cannot be served; ``reply`` is sent back if set."""

    def __init__(self, message: str, reply: Optional[bytes] = None):
        self.reply = reply
        super().__init__(message)


@dataclass
class SocksRequest:
    """A parsed CONNECT request."""
    version: int
    host: str
    port: int


def socks5_reply(code: int) -> bytes:
    """SOCKS5 reply with an all-zero IPv4 bound address."""
    return bytes([SOCKS5_VERSION, code, 0x00, ATYP_IPV4, 0, 0, 0, 0, 0, 0])


def socks4_reply(granted: bool) -> bytes:
    return bytes([0x00, SOCKS4_GRANTED if granted else SOCKS4_REJECTED, 0, 0, 0, 0, 0, 0])


def success_reply(version: int) -> bytes:
    return socks5_reply(REP_SUCCEEDED) if version == SOCKS5_VERSION else socks4_reply(True)


def failure_reply(version: int, code: int = REP_GENERAL_FAILURE) -> bytes:
    return socks5_reply(code) if version == SOCKS5_VERSION else socks4_reply(False)


async def _read_cstring(reader: asyncio.StreamReader) -> bytes:
    data = await reader.readuntil(b'\x00')
    if len(data) > MAX_USERID_LENGTH + 1:
        raise SocksError("SOCKS4 field too long")
    return data[:-1]


async def _read_socks5(reader: asyncio.StreamReader, writer: Any) -> SocksRequest:
    nmethods = (await reader.readexactly(1))[0]
    methods = await reader.readexactly(nmethods)
    if METHOD_NO_AUTH not in methods:
        writer.write(bytes([SOCKS5_VERSION, METHOD_NO_ACCEPTABLE]))
        await writer.drain()
        raise SocksError("No acceptable SOCKS5 authentication method")

    writer.write(bytes([SOCKS5_VERSION, METHOD_NO_AUTH]))
    await writer.drain()

    version, command, _reserved, atyp = await reader.readexactly(4)
    if version != SOCKS5_VERSION:
        raise SocksError(f"Unexpected SOCKS version in request: {version}",
                         socks5_reply(REP_GENERAL_FAILURE))
    if command != CMD_CONNECT:
        raise SocksError(f"SOCKS command not supported: {command}",
                         socks5_reply(REP_COMMAND_NOT_SUPPORTED))

    if atyp == ATYP_IPV4:
        host = socket.inet_ntop(socket.AF_INET, await reader.readexactly(4))
    elif atyp == ATYP_DOMAIN:
        length = (await reader.readexactly(1))[0]
        host = (await reader.readexactly(length)).decode('utf-8', errors='replace')
    elif atyp == ATYP_IPV6:
        host = socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))
    else:
        raise SocksError(f"SOCKS address type not supported: {atyp}",
                         socks5_reply(REP_ADDRESS_TYPE_NOT_SUPPORTED))

    port = int.from_bytes(await reader.readexactly(2), 'big')
    return SocksRequest(SOCKS5_VERSION, host, port)


async def _read_socks4(reader: asyncio.StreamReader) -> SocksRequest:
    header = await reader.readexactly(7)
    command = header[0]
    port = int.from_bytes(header[1:3], 'big')
    address = header[3:7]
    await _read_cstring(reader)  # user id, unused

    if command != CMD_CONNECT:
        raise SocksError(f"SOCKS command not supported: {command}", socks4_reply(False))

    # SOCKS4a: 0.0.0.x with x != 0 means a domain name follows the user id
    if address[:3] == b'\x00\x00\x00' and address[3] != 0:
        host = (await _read_cstring(reader)).decode('utf-8', errors='replace')
    else:
        host = socket.inet_ntop(socket.AF_INET, address)
    return SocksRequest(SOCKS4_VERSION, host, port)


async def read_request(reader: asyncio.StreamReader, writer: Any,
                       version: int = SOCKS5_VERSION) -> SocksRequest:
    """
    Negotiate with a SOCKS client and parse its CONNECT request.

    Args:
        reader, writer: The client's streams
        version: The SOCKS version this listener speaks (4 or 5)

    Raises:
        SocksError: If the request cannot be served
        asyncio.IncompleteReadError: If the client disconnects mid-request
    """
    received = (await reader.readexactly(1))[0]
    if received != version:
        raise SocksError(f"Unsupported SOCKS version: {received}")

    if version == SOCKS5_VERSION:
        return await _read_socks5(reader, writer)
    return await _read_socks4(reader)
