#!/usr/bin/env python3
"""
Q8 Assembler

Usage: python assemble.py <infile> [outfile=<infile>.ms] [--image out.q8]

Assembly language syntax:
    # comment
    MARK name
    MNEMONIC operands

Instructions:
    ALU:        ADD, SHR, SHL, NOT, AND, OR, XOR   (Ra Rb)
    Memory:     LD, ST                             (Ra Rb)
    Data:       DATA Rx value                      (value truncated to 8 bits)
    Control:    JMPR Rx, JMP mark, JIF flags mark, CLF, END

Operands:
    R0-R3       Registers
    flags       Any of C (carry), A (a larger), E (equal), Z (zero)
    mark        Name declared with MARK (forward or backward)

Output is one 8-bit word per line. An END word is always appended.
"""

import sys
import os
import re
from typing import Dict, List, Tuple
from executable import (
    Image, Instruction, Data, JumpRegister, JumpAddress, JumpIf, ClearFlags,
    End, REGISTERS, FLAG_CHARS, MAX_WORDS, TWO_REGISTER_OPS, disassemble,
)

UNSIGNED = re.compile(r'\+?[0-9]+')

# A listing holds only binary digits and whitespace
LISTING_BYTES = frozenset(b'01 \t\r\n')


class AssemblerError(Exception):
    """Assembler error with line information."""
    def __init__(self, message: str, line_num: int = 0, line: str = ""):
        self.message = message
        self.line_num = line_num
        self.line = line
        super().__init__(f"Line {line_num}: {message}\n  {line}")


class MalformedLine(AssemblerError):
    pass


class InvalidRegister(AssemblerError):
    def __init__(self, token: str, line_num: int = 0, line: str = ""):
        self.token = token
        super().__init__(f"Invalid register: {token}", line_num, line)


class UnknownInstruction(AssemblerError):
    def __init__(self, token: str, line_num: int = 0, line: str = ""):
        self.token = token
        super().__init__(f"Unknown instruction: {token}", line_num, line)


class InvalidImmediate(AssemblerError):
    def __init__(self, token: str, line_num: int = 0, line: str = ""):
        self.token = token
        super().__init__(f"Invalid number passed as data: {token}", line_num, line)


class InvalidConditionFlag(AssemblerError):
    def __init__(self, token: str, line_num: int = 0, line: str = ""):
        self.token = token
        super().__init__(f"Invalid JIF condition flag: {token}", line_num, line)


class UndefinedLabel(AssemblerError):
    def __init__(self, name: str, line_num: int = 0, line: str = ""):
        self.name = name
        super().__init__(f"Undefined label: {name}", line_num, line)


class LabelOutOfRange(AssemblerError):
    def __init__(self, name: str, address: int, line_num: int = 0, line: str = ""):
        self.name = name
        self.address = address
        super().__init__(
            f"Label {name} resolves to address {address}, outside the {MAX_WORDS}-word address space",
            line_num, line)


class ProgramTooLarge(AssemblerError):
    def __init__(self, found: int, maximum: int = MAX_WORDS):
        self.found = found
        self.maximum = maximum
        super().__init__(f"Program too large: {found} words found, {maximum} maximum")

    def __str__(self) -> str:
        return self.message


class Assembler:
    """Q8 Assembler."""

    def __init__(self):
        self.labels: Dict[str, int] = {}
        self.code: List[Instruction] = []
        self.references: Dict[int, Tuple[int, str]] = {}  # code index -> (line_num, line)
        self.word_offset = 0
        self.line_num = 0
        self.current_line = ""

    def error(self, message: str):
        """Raise a malformed line error."""
        raise MalformedLine(message, self.line_num, self.current_line)

    def expect_tokens(self, tokens: List[str], count: int):
        if len(tokens) != count:
            self.error(f"{tokens[0]} takes {count - 1} operand(s), {len(tokens) - 1} given")

    def parse_register(self, token: str) -> int:
        """Parse register name, return register number."""
        if token in REGISTERS:
            return REGISTERS[token]
        raise InvalidRegister(token, self.line_num, self.current_line)

    def parse_immediate(self, token: str) -> int:
        """Parse an unsigned decimal immediate."""
        if not UNSIGNED.fullmatch(token):
            raise InvalidImmediate(token, self.line_num, self.current_line)
        return int(token)

    def parse_flags(self, token: str) -> List[bool]:
        """Parse a JIF flag set such as 'AE' into (carry, a_larger, equal, zero)."""
        for c in token:
            if c not in FLAG_CHARS:
                raise InvalidConditionFlag(c, self.line_num, self.current_line)
        return [c in token for c in FLAG_CHARS]

    def emit(self, op: Instruction):
        """Append an instruction and advance the word offset."""
        if isinstance(op, (JumpAddress, JumpIf)):
            self.references[len(self.code)] = (self.line_num, self.current_line)
        self.code.append(op)
        self.word_offset += op.size()

    def assemble_mark(self, tokens: List[str]):
        """MARK name: the mark points at the next word to be emitted."""
        self.expect_tokens(tokens, 2)
        self.labels[tokens[1]] = self.word_offset + 1

    def assemble_line(self, line: str):
        """Assemble a single line."""
        tokens = line.split()

        if not tokens or tokens[0].startswith('#'):
            return

        mnemonic = tokens[0]

        if mnemonic == 'MARK':
            self.assemble_mark(tokens)
        elif mnemonic in TWO_REGISTER_OPS:
            self.expect_tokens(tokens, 3)
            reg_a = self.parse_register(tokens[1])
            reg_b = self.parse_register(tokens[2])
            self.emit(TWO_REGISTER_OPS[mnemonic](reg_a=reg_a, reg_b=reg_b))
        elif mnemonic == 'DATA':
            self.expect_tokens(tokens, 3)
            reg = self.parse_register(tokens[1])
            self.emit(Data(reg=reg, data=self.parse_immediate(tokens[2])))
        elif mnemonic == 'JMPR':
            self.expect_tokens(tokens, 2)
            self.emit(JumpRegister(reg=self.parse_register(tokens[1])))
        elif mnemonic == 'JMP':
            self.expect_tokens(tokens, 2)
            self.emit(JumpAddress(mark=tokens[1]))
        elif mnemonic == 'JIF':
            self.expect_tokens(tokens, 3)
            carry, a_larger, equal, zero = self.parse_flags(tokens[1])
            self.emit(JumpIf(carry=carry, a_larger=a_larger, equal=equal, zero=zero, mark=tokens[2]))
        elif mnemonic == 'CLF':
            self.expect_tokens(tokens, 1)
            self.emit(ClearFlags())
        elif mnemonic == 'END':
            self.expect_tokens(tokens, 1)
            self.emit(End())
        else:
            raise UnknownInstruction(mnemonic, self.line_num, self.current_line)

    def check_bounds(self):
        """Fail if the program does not fit in addressable memory."""
        if self.word_offset > MAX_WORDS:
            raise ProgramTooLarge(self.word_offset, MAX_WORDS)

    def resolve_labels(self) -> Dict[int, int]:
        """Resolve mark references. Returns code index -> target address."""
        resolved = {}
        for code_idx, (line_num, line) in self.references.items():
            mark = self.code[code_idx].mark
            if mark not in self.labels:
                raise UndefinedLabel(mark, line_num, line)

            address = self.labels[mark]
            if address >= MAX_WORDS:
                raise LabelOutOfRange(mark, address, line_num, line)
            resolved[code_idx] = address
        return resolved

    def assemble(self, source: str) -> List[str]:
        """Assemble source code into a list of binary words."""
        self.labels = {}
        self.code = []
        self.references = {}
        self.word_offset = 0

        lines = source.split('\n')
        for i, line in enumerate(lines, 1):
            line = line.rstrip('\r')
            self.line_num = i
            self.current_line = line
            try:
                self.assemble_line(line)
            except AssemblerError:
                raise
            except Exception as e:
                raise AssemblerError(str(e), i, line)

        self.check_bounds()
        resolved = self.resolve_labels()

        words = []
        for code_idx, op in enumerate(self.code):
            words.extend(op.encode(resolved.get(code_idx)))

        words.extend(End().encode())
        return words


def assemble(source: str) -> List[str]:
    """Assemble source text into binary words."""
    return Assembler().assemble(source)


def format_listing(words: List[str]) -> str:
    """One word per line, newline terminated."""
    return ''.join(f"{w}\n" for w in words)


def read_words(path: str) -> Tuple[List[str], Dict[str, int]]:
    """Load words (and marks, if any) from an image or a listing file."""
    with open(path, 'rb') as f:
        raw = f.read()

    if set(raw) <= LISTING_BYTES:
        return raw.decode('ascii').split(), {}

    image = Image.decode(raw)
    return image.words, image.labels


def main():
    import argparse

    parser = argparse.ArgumentParser(description='Q8 Assembler')
    parser.add_argument('infile', help='Input assembly file')
    parser.add_argument('outfile', nargs='?', default=None, help='Output listing file')
    parser.add_argument('--image', default=None, help='Also write a compressed binary image')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--dump-labels', action='store_true', help='Print mark addresses after assembly')
    parser.add_argument('--disassemble', '-d', action='store_true',
                        help='Treat infile as an image or listing and print its disassembly')

    args = parser.parse_args()

    if args.disassemble:
        try:
            words, labels = read_words(args.infile)
            print(disassemble(words, labels))
        except FileNotFoundError:
            print(f"Error: File not found: {args.infile}", file=sys.stderr)
            sys.exit(1)
        except Exception as e:
            print(f"Error loading {args.infile}: {e}", file=sys.stderr)
            sys.exit(1)
        return

    # Read source file
    try:
        with open(args.infile, 'r') as f:
            source = f.read()
    except FileNotFoundError:
        print(f"Error: File not found: {args.infile}", file=sys.stderr)
        sys.exit(1)

    # Assemble
    assembler = Assembler()
    try:
        words = assembler.assemble(source)
    except AssemblerError as e:
        print(f"Assembler error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.verbose:
        print(f"Assembled {len(assembler.code)} instructions")
        print(f"Words: {len(words)} ({assembler.word_offset} + END)")
        print(f"Labels: {assembler.labels}")

    if args.dump_labels:
        for name, addr in sorted(assembler.labels.items(), key=lambda kv: kv[1]):
            print(f"{name}: {addr}")

    if not args.outfile:
        args.outfile = os.path.splitext(args.infile)[0] + '.ms'

    image_bytes = None
    if args.image:
        try:
            image_bytes = Image(words, dict(assembler.labels)).encode()
        except ValueError as e:
            print(f"Error building image: {e}", file=sys.stderr)
            sys.exit(1)

    # Write output
    try:
        with open(args.outfile, 'w') as f:
            f.write(format_listing(words))
        print(f"Output written to {args.outfile}")

        if image_bytes is not None:
            with open(args.image, 'wb') as f:
                f.write(image_bytes)
            print(f"Image written to {args.image}")
    except Exception as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
