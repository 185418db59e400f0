''' Classic BPF program validator.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

import logging

LOG = logging.getLogger(__name__)


class ValidationFailure(Exception):
    '''Compiled program is not a valid classic BPF program'''
    def __init__(self, message):
        super().__init__(message)


def jump_targets(insn, counter):
    '''Absolute positions a jump at counter may continue at.
       k is an offset in 32 bit unsigned arithmetic.
    '''
    if insn.is_conditional():
        return [counter + 1 + insn.jt, counter + 1 + insn.jf]
    return [(counter + 1 + insn.k) & 0xFFFFFFFF]


def validate(program):
    '''Check that each jump is forward and lands on a valid
       instruction and that the program terminates with a RET.
    '''
    length = program.length()

    if length == 0:
        LOG.debug("empty program")
        return False

    for counter in range(0, length):
        insn = program.instruction_at(counter)
        if not insn.is_jump():
            continue
        for target in jump_targets(insn, counter):
            if target <= counter or target >= length:
                LOG.debug("jump from %d to %d outside (%d, %d)", counter, target, counter, length)
                return False

    if not program.instruction_at(length - 1).is_ret():
        LOG.debug("program does not end with ret")
        return False

    return True
