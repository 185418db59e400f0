''' Lexer for classic BPF bytecode text.
Covers xt_bpf --bytecode strings and tcpdump -ddd output.
'''

#
# Copyright (c) 2022 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2022 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#
# Dual Licensed under the GNU Public License Version 2.0 and BSD 3-clause
#
#

tokens = [
    'NUM', 'SEP',
]

t_ignore = ' \t\r'

# Commas and newlines separate instructions, runs of them count once
def t_SEP(t):
    r'[,\n][,\n \t\r]*'
    t.lexer.lineno += t.value.count('\n')
    return t

def t_NUM(t):
    r'\d+'
    t.value = int(t.value)
    return t

def t_error(t):
    raise ValueError(f"Illegal character '{t.value[0]}' at {t.lexpos}")
