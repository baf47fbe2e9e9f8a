import ipaddress
import logging
import os
import typing

import psutil

from k3p import K3S_API_PORT
from k3p import K3S_SERVER_PROCESS
from k3p import ROOT_LOGGER_NAME
from k3p.errors import DiscoveryExhaustedError
from k3p.errors import MalformedInputError
from k3p.errors import ProcessNotFoundError

logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.netutil")


def ip_to_hex(addr: str) -> str:
    """Render an IPv4 address the way /proc/net/tcp does: host byte order (little-endian), upper case hex."""
    return ipaddress.IPv4Address(addr).packed[::-1].hex().upper()


def hex_to_ip(value: str) -> str:
    try:
        raw = bytes.fromhex(value)
    except ValueError as e:
        raise MalformedInputError(f"invalid hex address {value!r}: {e}") from e
    if len(raw) != 4:
        raise MalformedInputError(f"invalid hex address {value!r}: expected 4 bytes, got {len(raw)}")
    return str(ipaddress.IPv4Address(raw[::-1]))


def port_to_hex(port: int) -> str:
    return f"{port:04X}"


LOCALHOST_HEX = ip_to_hex("127.0.0.1")


def scan_socket_table(lines: typing.Iterable[str], port: int = K3S_API_PORT) -> typing.Optional[str]:
    """
    Walk the lines of a /proc/<pid>/net/tcp table and return the first non-loopback remote address connected
    on the given port. Returns None when nothing qualifies. A structurally broken line is an error.
    """
    want_port = port_to_hex(port)
    lines = iter(lines)
    next(lines, None)  # header
    for line in lines:
        if not line.strip():
            continue
        fields = line.split()
        if len(fields) < 3:
            raise MalformedInputError(f"malformed socket table line: {line.strip()!r}")
        addr, sep, addr_port = fields[2].partition(":")
        if not sep:
            raise MalformedInputError(f"malformed address field {fields[2]!r}")
        if addr.upper() == LOCALHOST_HEX:
            continue
        if addr_port.upper() == want_port:
            return hex_to_ip(addr)
    return None


def _pids_for(executable: str) -> typing.List[int]:
    return [
        p.info["pid"]
        for p in psutil.process_iter(["pid", "name"])
        if p.info["name"] == executable
    ]


def get_external_address(executable: str = K3S_SERVER_PROCESS, port: int = K3S_API_PORT,
                         proc_root: str = "/proc") -> str:
    """
    Find the externally reachable address the named process is talking on, from the kernel socket table of
    every matching process. No retries: every failure is fatal to the caller.
    """
    pids = _pids_for(executable)
    if not pids:
        raise ProcessNotFoundError(f"no running process found for {executable!r}")
    for pid in pids:
        table = os.path.join(proc_root, str(pid), "net", "tcp")
        logger.debug(f"scanning {table} for connections on port {port}")
        with open(table) as f:
            addr = scan_socket_table(f, port)
        if addr:
            logger.debug(f"found {executable} address {addr}")
            return addr
    raise DiscoveryExhaustedError(f"could not determine the external address of {executable!r} on port {port}")


def get_k3s_address(proc_root: str = "/proc") -> str:
    return get_external_address(K3S_SERVER_PROCESS, K3S_API_PORT, proc_root)
