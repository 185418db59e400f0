''' Parser for classic BPF bytecode text.
Reads the instruction count followed by code jt jf k quads
back into a Program.
'''

#
# Copyright (c) 2022 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2022 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#
# Dual Licensed under the GNU Public License Version 2.0 and BSD 3-clause
#
#

import ply.lex as lex
import ply.yacc as yacc
from bytecode_lexer import tokens
import bytecode_lexer
from bpf_objects import Instruction, Program


class BytecodeSyntaxError(ValueError):
    '''Bytecode text could not be read'''
    def __init__(self, message):
        super().__init__(message)


def p_program(p):
    '''program : NUM SEP insns opt_sep
    '''
    if p[1] != len(p[3]):
        raise BytecodeSyntaxError(f"Count {p[1]} does not match {len(p[3])} instructions")
    p[0] = Program(p[3])

def p_insns(p):
    '''insns : insn
             | insns SEP insn
    '''
    if len(p) == 2:
        p[0] = [p[1]]
    else:
        p[0] = p[1] + [p[3]]

def p_insn(p):
    '''insn : NUM NUM NUM NUM
    '''
    try:
        p[0] = Instruction(p[1], p[2], p[3], p[4])
    except ValueError as exc:
        raise BytecodeSyntaxError(str(exc)) from exc

def p_opt_sep(p):
    '''opt_sep : SEP
               |
    '''

def p_error(p):
    if p is None:
        raise BytecodeSyntaxError("Unexpected end of bytecode")
    raise BytecodeSyntaxError(f"Unexpected '{p.value}' at {p.lexpos}")


LEXER = lex.lex(module=bytecode_lexer)
PARSER = yacc.yacc(debug=False, write_tables=False, tabmodule="bytecode_parsetab")


def parse_bytecode(text):
    '''Read xt_bpf or tcpdump -ddd bytecode into a Program'''
    try:
        return PARSER.parse(text.strip(), lexer=LEXER.clone())
    except BytecodeSyntaxError:
        raise
    except ValueError as exc:
        raise BytecodeSyntaxError(str(exc)) from exc
