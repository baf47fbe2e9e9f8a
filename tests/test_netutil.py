from unittest.mock import MagicMock
from unittest.mock import patch

import pytest

from k3p import netutil
from k3p.errors import DiscoveryExhaustedError
from k3p.errors import MalformedInputError
from k3p.errors import ProcessNotFoundError

HEADER = "  sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt   uid  timeout inode"


def _line(local: str, remote: str) -> str:
    return f"   0: {local} {remote} 01 00000000:00000000 00:00000000 00000000     0        0 12345 1"


@pytest.mark.parametrize(
    "value, ip",
    [
        ("0100000A", "10.0.0.1"),
        ("0100007F", "127.0.0.1"),
        ("C0A8010A", "10.1.168.192"),
        ("0a01a8c0", "192.168.1.10"),
    ],
)
def test_hex_to_ip(value, ip):
    assert netutil.hex_to_ip(value) == ip


@pytest.mark.parametrize("value", ["0100000A00", "01000A", "ZZ00000A", ""])
def test_hex_to_ip_invalid(value):
    with pytest.raises(MalformedInputError):
        netutil.hex_to_ip(value)


def test_hex_encoding():
    assert netutil.LOCALHOST_HEX == "0100007F"
    assert netutil.ip_to_hex("10.0.0.1") == "0100000A"
    assert netutil.port_to_hex(6443) == "192B"
    assert netutil.port_to_hex(22) == "0016"


def test_scan_skips_loopback():
    lines = [
        HEADER,
        _line("0100007F:192B", "0100007F:1A2B"),
    ]
    assert netutil.scan_socket_table(lines, port=0x1A2B) is None


def test_scan_decodes_remote_address():
    lines = [
        HEADER,
        _line("0100007F:192B", "0100007F:1A2B"),
        _line("0500000A:192B", "0100000A:1A2B"),
    ]
    assert netutil.scan_socket_table(lines, port=0x1A2B) == "10.0.0.1"


def test_scan_default_port():
    lines = [
        HEADER,
        _line("0500000A:D3F2", "0200000A:0016"),
        _line("0500000A:E1A0", "0300000A:192b"),
    ]
    assert netutil.scan_socket_table(lines) == "10.0.0.3"


def test_scan_skips_header_only():
    # a header shaped like an entry must never be interpreted
    assert netutil.scan_socket_table([_line("0100000A:192B", "0100000A:192B")]) is None


@pytest.mark.parametrize(
    "bad",
    [
        "   0: 0100007F:192B",
        "   0: 0100007F:192B 0100000A192B 01",
    ],
)
def test_scan_malformed(bad):
    with pytest.raises(MalformedInputError):
        netutil.scan_socket_table([HEADER, bad])


def _procs(*entries):
    rv = []
    for pid, name in entries:
        p = MagicMock()
        p.info = {"pid": pid, "name": name}
        rv.append(p)
    return rv


def _write_table(proc_root, pid, lines):
    d = proc_root / str(pid) / "net"
    d.mkdir(parents=True)
    (d / "tcp").write_text("\n".join([HEADER] + lines) + "\n")


@patch("k3p.netutil.psutil.process_iter")
def test_get_external_address(process_iter, tmp_path):
    process_iter.return_value = _procs((10, "sshd"), (42, "k3s-server"), (43, "k3s-server"))
    _write_table(tmp_path, 42, [_line("0100007F:192B", "0100007F:E000")])
    _write_table(tmp_path, 43, [_line("0100007F:192B", "0100007F:E000"), _line("0500000A:192B", "0A00000A:192B")])

    assert netutil.get_k3s_address(proc_root=str(tmp_path)) == "10.0.0.10"


@patch("k3p.netutil.psutil.process_iter")
def test_get_external_address_no_process(process_iter, tmp_path):
    process_iter.return_value = _procs((10, "sshd"))
    with pytest.raises(ProcessNotFoundError):
        netutil.get_k3s_address(proc_root=str(tmp_path))


@patch("k3p.netutil.psutil.process_iter")
def test_get_external_address_exhausted(process_iter, tmp_path):
    process_iter.return_value = _procs((42, "k3s-server"))
    _write_table(tmp_path, 42, [_line("0100007F:192B", "0100007F:E000")])
    with pytest.raises(DiscoveryExhaustedError):
        netutil.get_k3s_address(proc_root=str(tmp_path))


@patch("k3p.netutil.psutil.process_iter")
def test_get_external_address_malformed(process_iter, tmp_path):
    process_iter.return_value = _procs((42, "k3s-server"))
    _write_table(tmp_path, 42, ["   0: garbage"])
    with pytest.raises(MalformedInputError):
        netutil.get_k3s_address(proc_root=str(tmp_path))
