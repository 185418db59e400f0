''' Classic BPF program model.
Instructions, programs and their portable projection.
'''


#
# Copyright (c) 2023 Red Hat, Inc., Anton Ivanov <anivanov@redhat.com>
# Copyright (c) 2023 Cambridge Greys Ltd <anton.ivanov@cambridgegreys.com>
#

from collections import namedtuple


BPF_LD      =   0x00
BPF_LDX     =   0x01
BPF_ST      =   0x02
BPF_STX     =   0x03
BPF_ALU     =   0x04
BPF_JMP     =   0x05
BPF_RET     =   0x06
BPF_MISC    =   0x07

# ld/ldx fields
# define BPF_SIZE(code)  ((code) & 0x18)
BPF_W       =   0x00      # 32-bit
BPF_H       =   0x08      # 16-bit
BPF_B       =   0x10      # 8-bit

#define BPF_MODE(code)  ((code) & 0xe0)

BPF_IMM     =   0x00
BPF_ABS     =   0x20
BPF_IND     =   0x40
BPF_MEM     =   0x60
BPF_LEN     =   0x80 # packet length - special
BPF_MSH     =   0xa0

# alu/jmp fields
# define BPF_OP(code)    ((code) & 0xf0)
BPF_ADD     =   0x00
BPF_SUB     =   0x10
BPF_MUL     =   0x20
BPF_DIV     =   0x30
BPF_OR      =   0x40
BPF_AND     =   0x50
BPF_LSH     =   0x60
BPF_RSH     =   0x70
BPF_NEG     =   0x80
BPF_MOD     =   0x90
BPF_XOR     =   0xa0

BPF_JA      =   0x00
BPF_JEQ     =   0x10
BPF_JGT     =   0x20
BPF_JGE     =   0x30
BPF_JSET    =   0x40

#define BPF_SRC(code)   ((code) & 0x08)
BPF_K       =   0x00
BPF_X       =   0x08

#define BPF_RVAL(code)  ((code) & 0x18)
BPF_A       =   0x10

#define BPF_MISCOP(code) ((code) & 0xf8)
BPF_TAX     =   0x00
BPF_TXA     =   0x80


# Printable forms, tcpdump -d style. Operands are formatted with
# the instruction k value.

FORMATS = {
    BPF_RET|BPF_K:              ("ret", "#{}"),
    BPF_RET|BPF_A:              ("ret", ""),
    BPF_RET|BPF_X:              ("ret", "x"),

    BPF_LD|BPF_W|BPF_ABS:       ("ld", "[{}]"),
    BPF_LD|BPF_H|BPF_ABS:       ("ldh", "[{}]"),
    BPF_LD|BPF_B|BPF_ABS:       ("ldb", "[{}]"),
    BPF_LD|BPF_W|BPF_LEN:       ("ld", "#pktlen"),
    BPF_LD|BPF_W|BPF_IND:       ("ld", "[x + {}]"),
    BPF_LD|BPF_H|BPF_IND:       ("ldh", "[x + {}]"),
    BPF_LD|BPF_B|BPF_IND:       ("ldb", "[x + {}]"),
    BPF_LD|BPF_IMM:             ("ld", "#0x{:x}"),
    BPF_LD|BPF_MEM:             ("ld", "M[{}]"),

    BPF_LDX|BPF_W|BPF_IMM:      ("ldx", "#0x{:x}"),
    BPF_LDX|BPF_W|BPF_LEN:      ("ldx", "#pktlen"),
    BPF_LDX|BPF_MSH|BPF_B:      ("ldxb", "4*([{}]&0xf)"),
    BPF_LDX|BPF_MEM:            ("ldx", "M[{}]"),

    BPF_ST:                     ("st", "M[{}]"),
    BPF_STX:                    ("stx", "M[{}]"),

    BPF_JMP|BPF_JA:             ("ja", "{}"),
    BPF_JMP|BPF_JGT|BPF_K:      ("jgt", "#0x{:x}"),
    BPF_JMP|BPF_JGE|BPF_K:      ("jge", "#0x{:x}"),
    BPF_JMP|BPF_JEQ|BPF_K:      ("jeq", "#0x{:x}"),
    BPF_JMP|BPF_JSET|BPF_K:     ("jset", "#0x{:x}"),
    BPF_JMP|BPF_JGT|BPF_X:      ("jgt", "x"),
    BPF_JMP|BPF_JGE|BPF_X:      ("jge", "x"),
    BPF_JMP|BPF_JEQ|BPF_X:      ("jeq", "x"),
    BPF_JMP|BPF_JSET|BPF_X:     ("jset", "x"),

    BPF_ALU|BPF_ADD|BPF_K:      ("add", "#{}"),
    BPF_ALU|BPF_SUB|BPF_K:      ("sub", "#{}"),
    BPF_ALU|BPF_MUL|BPF_K:      ("mul", "#{}"),
    BPF_ALU|BPF_DIV|BPF_K:      ("div", "#{}"),
    BPF_ALU|BPF_MOD|BPF_K:      ("mod", "#{}"),
    BPF_ALU|BPF_AND|BPF_K:      ("and", "#0x{:x}"),
    BPF_ALU|BPF_OR|BPF_K:       ("or", "#0x{:x}"),
    BPF_ALU|BPF_XOR|BPF_K:      ("xor", "#0x{:x}"),
    BPF_ALU|BPF_LSH|BPF_K:      ("lsh", "#{}"),
    BPF_ALU|BPF_RSH|BPF_K:      ("rsh", "#{}"),
    BPF_ALU|BPF_ADD|BPF_X:      ("add", "x"),
    BPF_ALU|BPF_SUB|BPF_X:      ("sub", "x"),
    BPF_ALU|BPF_MUL|BPF_X:      ("mul", "x"),
    BPF_ALU|BPF_DIV|BPF_X:      ("div", "x"),
    BPF_ALU|BPF_MOD|BPF_X:      ("mod", "x"),
    BPF_ALU|BPF_AND|BPF_X:      ("and", "x"),
    BPF_ALU|BPF_OR|BPF_X:       ("or", "x"),
    BPF_ALU|BPF_XOR|BPF_X:      ("xor", "x"),
    BPF_ALU|BPF_LSH|BPF_X:      ("lsh", "x"),
    BPF_ALU|BPF_RSH|BPF_X:      ("rsh", "x"),
    BPF_ALU|BPF_NEG:            ("neg", ""),

    BPF_MISC|BPF_TAX:           ("tax", ""),
    BPF_MISC|BPF_TXA:           ("txa", ""),
}

PortableOpcode = namedtuple("PortableOpcode", ["code", "jt", "jf", "k"])


def _check_field(name, value, bits):
    '''Verify that a field fits its width in the wire encoding'''
    if not isinstance(value, int) or value < 0 or value >= (1 << bits):
        raise ValueError(f"Invalid {name} {value}, must fit in {bits} bits")


class Instruction():
    '''Classic BPF instruction.
       The code word packs class, size, mode and source the same
       way struct bpf_insn does. Which of them are meaningful is
       decided by the class, the rest are carried along as is.
    '''
    def __init__(self, code, jt=0, jf=0, k=0):
        _check_field("code", code, 16)
        _check_field("jt", jt, 8)
        _check_field("jf", jf, 8)
        _check_field("k", k, 32)
        self.code = code
        self.jt = jt
        self.jf = jf
        self.k = k

    @property
    def opcode_class(self):
        '''BPF_CLASS(code)'''
        return self.code & 0x07

    @property
    def size(self):
        '''BPF_SIZE(code)'''
        return self.code & 0x18

    @property
    def mode(self):
        '''BPF_MODE(code)'''
        return self.code & 0xe0

    @property
    def op(self):
        '''BPF_OP(code)'''
        return self.code & 0xf0

    @property
    def src(self):
        '''BPF_SRC(code)'''
        return self.code & 0x08

    @property
    def rval(self):
        '''BPF_RVAL(code), return value source for RET'''
        return self.code & 0x18

    def is_jump(self):
        '''Any JMP class instruction'''
        return self.opcode_class == BPF_JMP

    def is_conditional(self):
        '''Jumps which use jt/jf rather than k'''
        return self.is_jump() and self.op != BPF_JA

    def is_ret(self):
        '''Accept or reject terminal'''
        return self.opcode_class == BPF_RET

    def as_tuple(self):
        '''(code, jt, jf, k)'''
        return (self.code, self.jt, self.jf, self.k)

    def __eq__(self, other):
        '''Equal - needed for tests'''
        if not isinstance(other, Instruction):
            return NotImplemented
        return self.as_tuple() == other.as_tuple()

    def __hash__(self):
        return hash(self.as_tuple())

    def __repr__(self):
        return f"Instruction(0x{self.code:02x}, {self.jt}, {self.jf}, 0x{self.k:08x})"

    def disassemble(self, counter):
        '''Printable form of the instruction at position counter'''
        try:
            (mnemonic, operand) = FORMATS[self.code]
            operand = operand.format(self.k)
        except KeyError:
            (mnemonic, operand) = ("unimp", f"0x{self.code:x}")

        if self.is_conditional():
            return "({:03d}) {:<8s} {:<16s} jt {}\tjf {}".format(
                counter, mnemonic, operand,
                counter + 1 + self.jt, counter + 1 + self.jf)
        if self.is_jump():
            return "({:03d}) {:<8s} {}".format(
                counter, mnemonic, (counter + 1 + self.k) & 0xFFFFFFFF)
        return "({:03d}) {:<8s} {}".format(counter, mnemonic, operand).rstrip()


class Program():
    '''Compiled classic BPF program - an ordered list of instructions.
       Instructions are added only while the program is being loaded.
    '''
    def __init__(self, insns=None):
        self.insns = []
        if insns is not None:
            for insn in insns:
                self.append(insn)

    @classmethod
    def from_native(cls, native):
        '''Copy a struct bpf_program (or anything which looks like one)'''
        prog = cls()
        for index in range(0, int(native.bf_len)):
            insn = native.bf_insns[index]
            prog.append(Instruction(int(insn.code), int(insn.jt), int(insn.jf), int(insn.k)))
        return prog

    @classmethod
    def from_opcodes(cls, opcodes):
        '''Load (code, jt, jf, k) tuples'''
        prog = cls()
        for (code, jt, jf, k) in opcodes:
            prog.append(Instruction(code, jt, jf, k))
        return prog

    def append(self, insn):
        '''Add an instruction to the end of the program'''
        if not isinstance(insn, Instruction):
            raise TypeError(f"Expected an Instruction, got {insn!r}")
        self.insns.append(insn)

    def length(self):
        '''Number of instructions'''
        return len(self.insns)

    def instruction_at(self, index):
        '''Instruction at position index'''
        if index < 0 or index >= len(self.insns):
            raise IndexError(f"Instruction {index} out of range for a program of {len(self.insns)}")
        return self.insns[index]

    def __len__(self):
        return self.length()

    def __getitem__(self, index):
        return self.instruction_at(index)

    def __iter__(self):
        return iter(self.insns)

    def __eq__(self, other):
        if not isinstance(other, Program):
            return NotImplemented
        return self.insns == other.insns

    def __str__(self):
        '''C array form, same as tcpdump -dd'''
        return "\n".join(
            "{{ 0x{:02x}, {:3d}, {:3d}, 0x{:08x} }},".format(*insn.as_tuple())
            for insn in self.insns)

    def disassemble(self):
        '''tcpdump -d style listing'''
        return "\n".join(
            insn.disassemble(counter) for (counter, insn) in enumerate(self.insns))
