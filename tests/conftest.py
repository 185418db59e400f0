"""Shared fixtures for the pcap2iptables tests."""

import ctypes.util

import pytest

from bpf_objects import Program
from pcap_compiler import CompiledFilter, CompileError


HAVE_LIBPCAP = ctypes.util.find_library("pcap") is not None

needs_libpcap = pytest.mark.skipif(not HAVE_LIBPCAP, reason="libpcap not installed")

# "tcp" compiled for DLT_IPV4
TCP_OPCODES = [
    (0x30, 0, 0, 9),        # ldb [9]
    (0x15, 0, 1, 6),        # jeq #6 jt 2 jf 3
    (0x06, 0, 0, 65535),    # ret #65535
    (0x06, 0, 0, 0),        # ret #0
]


class TrackedFilter(CompiledFilter):
    """CompiledFilter which counts release calls."""

    def __init__(self, expression, link_type, program):
        super().__init__(expression, link_type, program)
        self.release_count = 0

    def release(self):
        self.release_count += 1
        super().release()


class FakeCompiler:
    """Stands in for libpcap, hands out a fixed program or error."""

    def __init__(self, program=None, error=None):
        self.program = program
        self.error = error
        self.issued = []
        self.kwargs = []

    def __call__(self, expression, link_type, **kwargs):
        self.kwargs.append(kwargs)
        if self.error is not None:
            raise CompileError(self.error)
        compiled = TrackedFilter(expression, link_type, self.program)
        self.issued.append(compiled)
        return compiled


@pytest.fixture
def tcp_program():
    return Program.from_opcodes(TCP_OPCODES)


@pytest.fixture
def fake_compiler(tcp_program):
    return FakeCompiler(program=tcp_program)
