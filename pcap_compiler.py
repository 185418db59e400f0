''' libpcap filter compiler binding.
pcap expressions are compiled by libpcap itself, the result is
a native struct bpf_program which has to be freed by libpcap.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import ctypes
import ctypes.util
import logging
import threading
from enum import Enum
from bpf_objects import Program

LOG = logging.getLogger(__name__)

PCAP_NETMASK_UNKNOWN = 0xFFFFFFFF
DEFAULT_SNAPLEN = 0xFFFF


class LinkType(Enum):
    '''Framing of the packet the filter is compiled against.
       Values are libpcap DLT_ numbers.
    '''
    IPv4 = 228      # DLT_IPV4
    IPv6 = 229      # DLT_IPV6
    Eth = 1         # DLT_EN10MB
    Raw = 12        # DLT_RAW

    @classmethod
    def from_name(cls, name):
        '''Map a request link name, anything unknown is IPv4'''
        return LINK_NAMES.get(name, cls.IPv4)


LINK_NAMES = {
    "ipv4": LinkType.IPv4,
    "ipv6": LinkType.IPv6,
    "eth": LinkType.Eth,
    "raw": LinkType.Raw,
}


class CompileError(Exception):
    '''libpcap rejected the expression'''
    def __init__(self, message):
        super().__init__(message)


class CompilerUnavailable(CompileError):
    '''libpcap could not be loaded'''


class bpf_insn(ctypes.Structure):
    '''struct bpf_insn'''
    _fields_ = [("code", ctypes.c_ushort),
                ("jt", ctypes.c_ubyte),
                ("jf", ctypes.c_ubyte),
                ("k", ctypes.c_uint32)]


class bpf_program(ctypes.Structure):
    '''struct bpf_program'''
    _fields_ = [("bf_len", ctypes.c_uint),
                ("bf_insns", ctypes.POINTER(bpf_insn))]


class pcap_t(ctypes.Structure):
    '''Opaque pcap handle'''


_LIBPCAP = None
_LIBPCAP_LOCK = threading.Lock()

# pcap_compile keeps the parser state in globals before libpcap 1.8
_COMPILE_LOCK = threading.Lock()


def libpcap():
    '''Load libpcap and declare the functions used here'''
    global _LIBPCAP
    with _LIBPCAP_LOCK:
        if _LIBPCAP is not None:
            return _LIBPCAP

        libname = ctypes.util.find_library("pcap")
        if libname is None:
            raise CompilerUnavailable("libpcap not found")
        try:
            lib = ctypes.CDLL(libname)
        except OSError as exc:
            raise CompilerUnavailable(f"cannot load {libname}: {exc}") from exc

        lib.pcap_open_dead.argtypes = [ctypes.c_int, ctypes.c_int]
        lib.pcap_open_dead.restype = ctypes.POINTER(pcap_t)

        lib.pcap_compile.argtypes = [ctypes.POINTER(pcap_t), ctypes.POINTER(bpf_program),
                                     ctypes.c_char_p, ctypes.c_int, ctypes.c_uint32]
        lib.pcap_compile.restype = ctypes.c_int

        lib.pcap_geterr.argtypes = [ctypes.POINTER(pcap_t)]
        lib.pcap_geterr.restype = ctypes.c_char_p

        lib.pcap_freecode.argtypes = [ctypes.POINTER(bpf_program)]
        lib.pcap_freecode.restype = None

        lib.pcap_close.argtypes = [ctypes.POINTER(pcap_t)]
        lib.pcap_close.restype = None

        _LIBPCAP = lib
        LOG.debug("loaded %s", libname)
        return _LIBPCAP


class CompiledFilter():
    '''Expression, link type and the program compiled from them.
       Owns the native program buffer, which must be released
       exactly once. Use as a context manager.
    '''
    def __init__(self, expression, link_type, program, native=None, free_fn=None):
        self.expression = expression
        self.link_type = link_type
        self.program = program
        self.native = native
        self.free_fn = free_fn
        self.released = False

    def release(self):
        '''Free the native program'''
        if self.released:
            raise ValueError(f"Program for '{self.expression}' released twice")
        self.released = True
        if self.free_fn is not None and self.native is not None:
            self.free_fn(ctypes.byref(self.native))
        self.native = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
        return False


def compile_filter(expression, link_type, optimize=True, snaplen=DEFAULT_SNAPLEN,
                   netmask=PCAP_NETMASK_UNKNOWN):
    '''Compile a pcap expression for link_type.
       Returns a CompiledFilter, raises CompileError with the
       libpcap message if the expression does not compile.
    '''
    try:
        encoded = expression.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise CompileError(f"Expression is not valid text: {exc.reason}") from exc

    lib = libpcap()

    pcap = lib.pcap_open_dead(link_type.value, snaplen)
    if not pcap:
        raise CompileError(f"pcap_open_dead failed for {link_type.name}")

    native = bpf_program()
    try:
        with _COMPILE_LOCK:
            ret = lib.pcap_compile(pcap, ctypes.byref(native), encoded,
                                   1 if optimize else 0, netmask)
            if ret != 0:
                message = lib.pcap_geterr(pcap).decode("utf-8", errors="replace")
                LOG.debug("pcap_compile failed for '%s': %s", expression, message)
                raise CompileError(message)
    finally:
        lib.pcap_close(pcap)

    compiled = CompiledFilter(expression, link_type, None, native=native, free_fn=lib.pcap_freecode)
    try:
        compiled.program = Program.from_native(native)
    except Exception:
        compiled.release()
        raise

    return compiled
