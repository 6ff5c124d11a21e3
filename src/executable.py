"""
Machine code encoding/decoding library for the Q8 machine.

Word format: every word is 8 bits, written as an 8-character string of 0/1.

One-word instructions:
  1000 aa bb   ADD   reg_a, reg_b
  1001 aa bb   SHR   reg_a, reg_b
  1010 aa bb   SHL   reg_a, reg_b
  1011 aa bb   NOT   reg_a, reg_b
  1100 aa bb   AND   reg_a, reg_b
  1101 aa bb   OR    reg_a, reg_b
  1110 aa bb   XOR   reg_a, reg_b
  0001 aa bb   ST    reg_a, reg_b
  0000 aa bb   LD    reg_a, reg_b
  001100 rr    JMPR  reg
  01100000     CLF
  11001111     END

Two-word instructions (second word is the immediate or the jump address):
  001000 rr    DATA  reg, imm8
  01000000     JMP   addr8
  0101 CAEZ    JIF   flags, addr8

Image format (zstd-compressed):
  MAGIC (4) + VERSION (2) + WORD_COUNT (2) + words (1 byte each)
  + MARK_COUNT (2) + per mark: NAME_LEN (1) + name (UTF-8) + ADDRESS (2)
"""

from zstd import compress, decompress
from dataclasses import dataclass, field
from typing import ClassVar, Dict, List, Optional, Tuple
import struct

# Magic bytes for image format
MAGIC = b'Q8MC'
VERSION = 1

WORD_BITS = 8
MAX_WORDS = 2 ** WORD_BITS

# Register names
REGISTERS = {
    'R0': 0, 'R1': 1, 'R2': 2, 'R3': 3,
}

REG_NAMES = {v: k for k, v in REGISTERS.items()}

# Condition flags in bit order (high to low) of the JIF word
FLAG_CHARS = 'CAEZ'


def register_bits(reg: int) -> str:
    """Return the 2-bit code of a register."""
    return format(reg, '02b')


def to_word(value: int) -> str:
    """Render the low 8 bits of value as a binary word."""
    return format(value & (MAX_WORDS - 1), f'0{WORD_BITS}b')


def address_word(address: int) -> str:
    if not 0 <= address < MAX_WORDS:
        raise ValueError(f"Address {address} does not fit in {WORD_BITS} bits")
    return format(address, f'0{WORD_BITS}b')


@dataclass
class Instruction:
    """Base of all instruction forms."""
    MNEMONIC: ClassVar[str] = ''
    SIZE: ClassVar[int] = 1

    def size(self) -> int:
        """Return encoded size in words."""
        return self.SIZE

    def encode(self, address: Optional[int] = None) -> List[str]:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.MNEMONIC


@dataclass
class TwoRegister(Instruction):
    """Register-register form: opcode nibble, reg_a, reg_b."""
    reg_a: int = 0
    reg_b: int = 0
    OPCODE: ClassVar[str] = ''

    def encode(self, address: Optional[int] = None) -> List[str]:
        return [self.OPCODE + register_bits(self.reg_a) + register_bits(self.reg_b)]

    def __str__(self) -> str:
        return f"{self.MNEMONIC} {REG_NAMES[self.reg_a]} {REG_NAMES[self.reg_b]}"


@dataclass
class Add(TwoRegister):
    MNEMONIC: ClassVar[str] = 'ADD'
    OPCODE: ClassVar[str] = '1000'


@dataclass
class Shr(TwoRegister):
    MNEMONIC: ClassVar[str] = 'SHR'
    OPCODE: ClassVar[str] = '1001'


@dataclass
class Shl(TwoRegister):
    MNEMONIC: ClassVar[str] = 'SHL'
    OPCODE: ClassVar[str] = '1010'


@dataclass
class Not(TwoRegister):
    MNEMONIC: ClassVar[str] = 'NOT'
    OPCODE: ClassVar[str] = '1011'


@dataclass
class And(TwoRegister):
    MNEMONIC: ClassVar[str] = 'AND'
    OPCODE: ClassVar[str] = '1100'


@dataclass
class Or(TwoRegister):
    MNEMONIC: ClassVar[str] = 'OR'
    OPCODE: ClassVar[str] = '1101'


@dataclass
class XOr(TwoRegister):
    MNEMONIC: ClassVar[str] = 'XOR'
    OPCODE: ClassVar[str] = '1110'


@dataclass
class Store(TwoRegister):
    MNEMONIC: ClassVar[str] = 'ST'
    OPCODE: ClassVar[str] = '0001'


@dataclass
class Load(TwoRegister):
    MNEMONIC: ClassVar[str] = 'LD'
    OPCODE: ClassVar[str] = '0000'


@dataclass
class Data(Instruction):
    """Load an immediate into a register. Only the low 8 bits are encoded."""
    reg: int = 0
    data: int = 0
    MNEMONIC: ClassVar[str] = 'DATA'
    SIZE: ClassVar[int] = 2

    def encode(self, address: Optional[int] = None) -> List[str]:
        return ['001000' + register_bits(self.reg), to_word(self.data)]

    def __str__(self) -> str:
        return f"DATA {REG_NAMES[self.reg]} {self.data}"


@dataclass
class JumpRegister(Instruction):
    reg: int = 0
    MNEMONIC: ClassVar[str] = 'JMPR'

    def encode(self, address: Optional[int] = None) -> List[str]:
        return ['001100' + register_bits(self.reg)]

    def __str__(self) -> str:
        return f"JMPR {REG_NAMES[self.reg]}"


@dataclass
class JumpAddress(Instruction):
    """Unconditional jump to a mark, resolved in the second pass."""
    mark: str = ''
    MNEMONIC: ClassVar[str] = 'JMP'
    SIZE: ClassVar[int] = 2

    def encode(self, address: Optional[int] = None) -> List[str]:
        if address is None:
            raise ValueError(f"Unresolved jump target: {self.mark}")
        return ['01000000', address_word(address)]

    def __str__(self) -> str:
        return f"JMP {self.mark}"


@dataclass
class JumpIf(Instruction):
    """Conditional jump; taken when any of the selected flags is set."""
    carry: bool = False
    a_larger: bool = False
    equal: bool = False
    zero: bool = False
    mark: str = ''
    MNEMONIC: ClassVar[str] = 'JIF'
    SIZE: ClassVar[int] = 2

    @property
    def flags(self) -> Tuple[bool, bool, bool, bool]:
        return (self.carry, self.a_larger, self.equal, self.zero)

    def flag_string(self) -> str:
        return ''.join(c for c, on in zip(FLAG_CHARS, self.flags) if on)

    def encode(self, address: Optional[int] = None) -> List[str]:
        if address is None:
            raise ValueError(f"Unresolved jump target: {self.mark}")
        bits = ''.join('1' if on else '0' for on in self.flags)
        return ['0101' + bits, address_word(address)]

    def __str__(self) -> str:
        return f"JIF {self.flag_string()} {self.mark}"


@dataclass
class ClearFlags(Instruction):
    MNEMONIC: ClassVar[str] = 'CLF'

    def encode(self, address: Optional[int] = None) -> List[str]:
        return ['01100000']


@dataclass
class End(Instruction):
    MNEMONIC: ClassVar[str] = 'END'

    def encode(self, address: Optional[int] = None) -> List[str]:
        return ['11001111']


TWO_REGISTER_OPS = {
    cls.MNEMONIC: cls
    for cls in (Add, Shr, Shl, Not, And, Or, XOr, Store, Load)
}

END_WORD = End().encode()[0]


def encode(instruction: Instruction, address: Optional[int] = None) -> List[str]:
    """Encode one instruction into its binary word(s)."""
    return instruction.encode(address)


def decode(words: List[str]) -> Tuple[Instruction, int]:
    """Decode the instruction starting at words[0]. Returns (instruction, words consumed).

    Jump instructions come back with their target address as the mark, e.g. '@5'.
    """
    if not words:
        raise ValueError("Need at least one word to decode")

    word = words[0]
    if len(word) != WORD_BITS or set(word) - {'0', '1'}:
        raise ValueError(f"Invalid word: {word!r}")

    # END shares its pattern with AND R3 R3; the halt reading wins
    if word == END_WORD:
        return End(), 1
    if word == '01100000':
        return ClearFlags(), 1

    reg = int(word[6:], 2)
    if word.startswith('001100'):
        return JumpRegister(reg=reg), 1

    for cls in TWO_REGISTER_OPS.values():
        if word.startswith(cls.OPCODE):
            return cls(reg_a=int(word[4:6], 2), reg_b=int(word[6:], 2)), 1

    if word.startswith('001000') or word == '01000000' or word.startswith('0101'):
        if len(words) < 2:
            raise ValueError(f"Truncated two-word instruction: {word}")
        operand = int(words[1], 2)
        if word.startswith('001000'):
            return Data(reg=reg, data=operand), 2
        if word == '01000000':
            return JumpAddress(mark=f'@{operand}'), 2
        flags = [c == '1' for c in word[4:]]
        return JumpIf(*flags, mark=f'@{operand}'), 2

    raise ValueError(f"Unknown instruction word: {word}")


@dataclass
class Image:
    """Represents an assembled program image."""
    words: List[str] = field(default_factory=list)
    labels: Dict[str, int] = field(default_factory=dict)

    def encode(self) -> bytes:
        """Encode image to compressed bytes."""
        # Header: MAGIC (4) + VERSION (2) + WORD_COUNT (2)
        header = struct.pack('<4sHH', MAGIC, VERSION, len(self.words))
        body = bytes(int(w, 2) for w in self.words)

        marks = [struct.pack('<H', len(self.labels))]
        for name, address in self.labels.items():
            raw = name.encode('utf-8')
            if len(raw) > 0xFF:
                raise ValueError(f"Mark name too long for image ({len(raw)} bytes, 255 maximum): {name[:16]}...")
            if not 0 <= address <= 0xFFFF:
                raise ValueError(f"Mark {name} address {address} out of 16-bit range")
            marks.append(struct.pack('<B', len(raw)) + raw + struct.pack('<H', address))

        return compress(header + body + b''.join(marks), 22)

    @classmethod
    def decode(cls, data: bytes) -> 'Image':
        """Decode compressed bytes to an image."""
        data = decompress(data)

        if len(data) < 8:
            raise ValueError("Data too short for image header")

        magic, version, count = struct.unpack('<4sHH', data[:8])

        if magic != MAGIC:
            raise ValueError(f"Invalid magic bytes: {magic}")
        if version > VERSION:
            raise ValueError(f"Unsupported version: {version}")

        offset = 8
        if offset + count + 2 > len(data):
            raise ValueError("Truncated word section")

        image = cls()
        image.words = [to_word(b) for b in data[offset:offset + count]]
        offset += count

        (mark_count,) = struct.unpack('<H', data[offset:offset + 2])
        offset += 2
        for _ in range(mark_count):
            if offset >= len(data):
                raise ValueError(f"Truncated mark table at offset {offset}")
            name_len = data[offset]
            offset += 1
            if offset + name_len + 2 > len(data):
                raise ValueError(f"Truncated mark table at offset {offset}")
            name = data[offset:offset + name_len].decode('utf-8')
            offset += name_len
            (address,) = struct.unpack('<H', data[offset:offset + 2])
            offset += 2
            image.labels[name] = address

        return image


def synthesize_name(target: int, labels: Dict[str, int], names: Dict[int, str]) -> str:
    """Pick a mark name for target that no existing mark uses."""
    taken = set(labels) | set(names.values())
    name = f'L{target}'
    while name in taken:
        name += '_'
    return name


def disassemble(words: List[str], labels: Optional[Dict[str, int]] = None) -> str:
    """Disassemble a word listing back to source form."""
    labels = labels or {}
    names: Dict[int, str] = {}
    for name, address in labels.items():
        names.setdefault(address, name)

    # First pass: decode and collect jump targets
    decoded = []
    index = 0
    while index < len(words):
        op, consumed = decode(words[index:])
        if isinstance(op, (JumpAddress, JumpIf)):
            target = int(op.mark[1:])
            if target not in names:
                names[target] = synthesize_name(target, labels, names)
            op.mark = names[target]
        decoded.append((index + 1, op))
        index += consumed

    lines = [
        f"# Words: {len(words)}",
        f"# Instructions: {len(decoded)}",
        "",
    ]

    starts = {address for address, _ in decoded}
    for address, op in decoded:
        if address in names:
            lines.append(f"MARK {names[address]}")
        lines.append(str(op))

    end = len(words) + 1
    for address in sorted(names):
        if address == end:
            lines.append(f"MARK {names[address]}")
        elif address not in starts:
            lines.append(f"# {names[address]} -> {address} is not an instruction boundary")

    return '\n'.join(lines)
