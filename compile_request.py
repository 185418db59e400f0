''' Compile requests.
pcap expression in, iptables rule or an error message out.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import logging
from collections import namedtuple
from pcap_compiler import LinkType, CompileError, compile_filter, DEFAULT_SNAPLEN, PCAP_NETMASK_UNKNOWN
from bpf_validate import validate, ValidationFailure
from bpf_export import export, check_export
from iptables_objects import to_firewall_rule, UnsupportedLinkType

LOG = logging.getLogger(__name__)

CompilerConfig = namedtuple("CompilerConfig", ["optimize", "snaplen", "netmask"])

DEFAULT_CONFIG = CompilerConfig(optimize=True, snaplen=DEFAULT_SNAPLEN, netmask=PCAP_NETMASK_UNKNOWN)

# Failures reported back to the requester. Anything else is a bug.
REQUEST_ERRORS = (CompileError, ValidationFailure, UnsupportedLinkType)


class CompileResponse(dict):
    '''Response to a compile request.
       Disasm is reserved and always empty.
    '''
    def __init__(self, iptables="", error=""):
        super().__init__()
        self["Iptables"] = iptables
        self["Error"] = error
        self["Disasm"] = ""

    @property
    def iptables(self):
        '''Rule text'''
        return self["Iptables"]

    @property
    def error(self):
        '''Error message'''
        return self["Error"]


class FullyCompiledFilter():
    '''Exported opcodes and the rule made from them'''
    def __init__(self, expression, link_type, opcodes, iptables):
        self.expression = expression
        self.link_type = link_type
        self.opcodes = opcodes
        self.iptables = iptables


def compile_filter_opcodes(expression, link_type, config=DEFAULT_CONFIG, compiler=compile_filter, rule=True):
    '''Compile, validate, export and, if rule is set, serialize.
       The compiled program is released on the way out whatever happens.
    '''
    with compiler(expression, link_type, optimize=config.optimize,
                  snaplen=config.snaplen, netmask=config.netmask) as compiled:
        if not validate(compiled.program):
            raise ValidationFailure(f"Compiled program for '{expression}' is not a valid BPF program")
        opcodes = export(compiled.program)
        check_export(compiled.program, opcodes)
        LOG.debug("%s ~ %s", opcodes, expression)
        iptables = ""
        if rule:
            iptables = to_firewall_rule(compiled.expression, compiled.link_type, opcodes)

    return FullyCompiledFilter(expression, link_type, opcodes, iptables)


def compile_bpf(expression, link_name, config=DEFAULT_CONFIG, compiler=compile_filter):
    '''Handle a single compile request'''
    link_type = LinkType.from_name(link_name)
    try:
        result = compile_filter_opcodes(expression, link_type, config=config, compiler=compiler)
    except REQUEST_ERRORS as exc:
        LOG.warning("cannot compile '%s' for %s: %s", expression, link_type.name, exc)
        return CompileResponse(error=str(exc))
    return CompileResponse(iptables=result.iptables)
