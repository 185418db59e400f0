''' Export of compiled programs into portable opcodes.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

from bpf_objects import PortableOpcode


class ExportInvariantViolation(Exception):
    '''Exported opcodes do not match the program they came from'''
    def __init__(self, message):
        super().__init__(message)


def export(program):
    '''Dump (code, jt, jf, k) for every instruction, in order'''
    return [PortableOpcode(*insn.as_tuple()) for insn in program]


def check_export(program, opcodes):
    '''Verify export output against its source program'''
    if len(opcodes) != program.length():
        raise ExportInvariantViolation(
            f"Exported {len(opcodes)} opcodes from a program of {program.length()}")
    for (counter, opcode) in enumerate(opcodes):
        if tuple(opcode) != program.instruction_at(counter).as_tuple():
            raise ExportInvariantViolation(
                f"Opcode {counter} {tuple(opcode)} differs from {program.instruction_at(counter)!r}")
