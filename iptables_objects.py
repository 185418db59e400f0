''' iptables xt_bpf rule generation.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

from pcap_compiler import LinkType

# Comments are cut at this many bytes of UTF-8
COMMENT_LIMIT = 250
ELLIPSIS = "..."

COMMANDS = {
    LinkType.IPv4: "iptables -I INPUT",
    LinkType.IPv6: "ip6tables -I INPUT",
}


class UnsupportedLinkType(ValueError):
    '''No iptables flavour matches on this framing'''
    def __init__(self, link_type):
        super().__init__(f"Link type {link_type.name} cannot be used in an iptables rule, use ipv4 or ipv6")
        self.link_type = link_type


def limit_string_size(text):
    '''Trim and cut text to fit a rule comment.
       Whole characters only, never a partial UTF-8 sequence.
    '''
    text = text.encode("utf-8", errors="replace").decode("utf-8").strip("\r\n\t ")

    if len(text.encode("utf-8")) < COMMENT_LIMIT:
        return text

    res = ""
    used = 0
    for char in text:
        size = len(char.encode("utf-8"))
        if used + size >= COMMENT_LIMIT:
            break
        res += char
        used += size

    return res + ELLIPSIS


def bytecode_clause(opcodes):
    '''xt_bpf --bytecode argument'''
    res = f"{len(opcodes)}, "
    for (code, jt, jf, k) in opcodes:
        res += f"{code} {jt} {jf} {k},"
    return res


def rule_command(link_type):
    '''Rule insertion command for link_type'''
    try:
        return COMMANDS[link_type]
    except KeyError:
        raise UnsupportedLinkType(link_type) from None


def to_firewall_rule(expression, link_type, opcodes):
    '''Form a commented out DROP rule for the compiled expression'''
    command = rule_command(link_type)
    return f"# {command} -m bpf --bytecode \"{bytecode_clause(opcodes)}\" " \
           f"-j DROP -m comment --comment \"{limit_string_size(expression)}\""
