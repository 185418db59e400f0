#!/usr/bin/python3

'''Command line frontend'''

#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import sys
import json
import logging
from argparse import ArgumentParser
from pcap_compiler import LinkType, LINK_NAMES, DEFAULT_SNAPLEN, PCAP_NETMASK_UNKNOWN
from compile_request import CompilerConfig, CompileResponse, compile_bpf, compile_filter_opcodes, REQUEST_ERRORS
from bytecode_parser import parse_bytecode, BytecodeSyntaxError
from bpf_objects import Program
from bpf_validate import validate, ValidationFailure
from bpf_export import export, check_export
from iptables_objects import to_firewall_rule

LOG = logging.getLogger("pcap2iptables")

FORMATS = ["iptables", "json", "asm", "c"]


def parse_args(argv=None):
    '''Command line arguments'''
    aparser = ArgumentParser(description=main.__doc__)
    aparser.add_argument(
       '--expression',
        help='pcap expression',
        type=str
        )
    aparser.add_argument(
       '--bytecode',
        help='check and convert existing bytecode (xt_bpf or tcpdump -ddd) instead of an expression',
        type=str
        )
    aparser.add_argument(
       '--link',
        help='link type ipv4, ipv6, eth, raw',
        type=str,
        default="ipv4"
        )
    aparser.add_argument(
       '--format',
        help='output format iptables, json, asm, c',
        choices=FORMATS,
        default="iptables"
        )
    aparser.add_argument(
       '--output',
        help='output file, if absent - stdout',
        type=str
        )
    aparser.add_argument(
       '--no-optimize',
        help='do not run the libpcap optimizer',
        action='store_true'
        )
    aparser.add_argument(
       '--debug',
        help='debug level',
        type=int,
        default=0
        )
    args = vars(aparser.parse_args(argv))

    if args["expression"] is None and args["bytecode"] is None:
        aparser.error("one of --expression or --bytecode is required")
    if args["link"] not in LINK_NAMES:
        LOG.warning("unknown link type %s, using ipv4", args["link"])
    return args


def setup_logging(debug):
    '''Map --debug to a log level'''
    if debug > 1:
        level = logging.DEBUG
    elif debug > 0:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(stream=sys.stderr, level=level,
                        format="%(asctime)s %(name)s %(levelname)s %(message)s")


def from_bytecode(text, link_type, rule=True):
    '''Re-check and, if rule is set, re-render bytecode'''
    program = parse_bytecode(text)
    if not validate(program):
        raise ValidationFailure("Bytecode is not a valid BPF program")
    opcodes = export(program)
    check_export(program, opcodes)
    iptables = ""
    if rule:
        iptables = to_firewall_rule(text, link_type, opcodes)
    return (program, iptables)


def bytecode_response(text, link_type):
    '''Compile response for existing bytecode'''
    try:
        (_, iptables) = from_bytecode(text, link_type)
    except REQUEST_ERRORS + (BytecodeSyntaxError,) as exc:
        return CompileResponse(error=str(exc))
    return CompileResponse(iptables=iptables)


def render(args, config):
    '''Produce the requested output format, returns (text, error)'''
    link_type = LinkType.from_name(args["link"])

    # json is the compile response, the same for expressions and bytecode
    if args["format"] == "json":
        if args["bytecode"] is not None:
            response = bytecode_response(args["bytecode"], link_type)
        else:
            response = compile_bpf(args["expression"], args["link"], config=config)
        return (json.dumps(response), response.error)

    # asm and c listings do not need a rule, any link type will do
    rule = args["format"] == "iptables"
    try:
        if args["bytecode"] is not None:
            (program, iptables) = from_bytecode(args["bytecode"], link_type, rule=rule)
        else:
            result = compile_filter_opcodes(args["expression"], link_type, config=config, rule=rule)
            program = Program.from_opcodes(result.opcodes)
            iptables = result.iptables
    except REQUEST_ERRORS + (BytecodeSyntaxError,) as exc:
        return (None, str(exc))

    if args["format"] == "asm":
        return (program.disassemble(), "")
    if args["format"] == "c":
        return (str(program), "")
    return (iptables, "")


def main(argv=None):
    '''Compile a pcap expression into an iptables
    bpf match rule
    '''
    args = parse_args(argv)
    setup_logging(args["debug"])

    config = CompilerConfig(
        optimize=not args["no_optimize"],
        snaplen=DEFAULT_SNAPLEN,
        netmask=PCAP_NETMASK_UNKNOWN)

    (text, error) = render(args, config)

    if text is None:
        sys.stderr.write(f"{error}\n")
        return 1

    try:
        out = open(args["output"], "w", encoding="utf-8")
    except (KeyError, TypeError):
        out = sys.stdout

    out.write(f"{text}\n")

    if out != sys.stdout:
        out.close()

    if error:
        sys.stderr.write(f"{error}\n")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
