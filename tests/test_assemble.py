import pytest

import assemble
from assemble import (
    Assembler, AssemblerError, MalformedLine, InvalidRegister, UnknownInstruction,
    InvalidImmediate, InvalidConditionFlag, UndefinedLabel, ProgramTooLarge,
    LabelOutOfRange, format_listing,
)
from executable import Add, Data, End, Image, JumpAddress, JumpIf

END = '11001111'


def test_two_register_forms():
    words = assemble.assemble("ADD R0 R1\nSHR R1 R2\nSHL R2 R3\nNOT R3 R0\nAND R0 R0\n"
                              "OR R1 R1\nXOR R2 R2\nST R3 R3\nLD R0 R3\n")
    assert words == [
        '10000001', '10010110', '10101011', '10111100', '11000000',
        '11010101', '11101010', '00011111', '00000011', END,
    ]


def test_data():
    assert assemble.assemble("DATA R2 5") == ['00100010', '00000101', END]


def test_data_truncates_to_low_byte():
    assert assemble.assemble("DATA R0 300") == ['00100000', '00101100', END]


def test_jmpr_clf_end():
    assert assemble.assemble("JMPR R2\nCLF\nEND") == ['00110010', '01100000', END, END]


def test_trailing_end_always_appended():
    assert assemble.assemble("")[-1] == END
    assert assemble.assemble("END") == [END, END]


def test_backward_reference():
    source = "DATA R0 1\nDATA R1 2\nMARK loop\nADD R0 R1\nJMP loop\n"
    words = assemble.assemble(source)
    # four words precede the mark
    assert words[5:7] == ['01000000', '00000101']


def test_forward_reference():
    source = "JMP done\nADD R0 R1\nMARK done\nEND\n"
    assert assemble.assemble(source) == ['01000000', '00000100', '10000001', END, END]


def test_jif_uses_third_token_as_mark():
    source = "MARK top\nCLF\nJIF AE top\n"
    assert assemble.assemble(source) == ['01100000', '01010110', '00000001', END]


def test_jif_duplicate_flags():
    assert assemble.assemble("MARK t\nJIF CCZZ t")[0] == '01011001'


def test_mark_redefinition_last_wins():
    asm = Assembler()
    asm.assemble("MARK a\nCLF\nMARK a\nJMP a")
    assert asm.labels == {'a': 2}


def test_blank_and_comment_lines_are_neutral():
    plain = Assembler()
    plain.assemble("MARK x\nADD R0 R1\nMARK y\nJMP x\nJMP y")
    noisy = Assembler()
    noisy.assemble("\n# header\n   \nMARK x\n#ADD R0 R1\nADD R0 R1\n\t\n# MARK z\nMARK y\nJMP x\n#\nJMP y\n")
    assert noisy.labels == plain.labels
    assert noisy.word_offset == plain.word_offset == 5
    assert assemble.assemble("\n# c\nCLF") == assemble.assemble("CLF")


def test_program_model():
    asm = Assembler()
    asm.assemble("DATA R1 7\nMARK l\nADD R1 R2\nJMP l\nJIF Z l")
    assert asm.code == [
        Data(reg=1, data=7),
        Add(reg_a=1, reg_b=2),
        JumpAddress(mark='l'),
        JumpIf(zero=True, mark='l'),
    ]
    assert asm.word_offset == 7


def test_largest_program_fits():
    words = assemble.assemble("CLF\n" * 256)
    assert len(words) == 257
    assert words[-1] == END


def test_program_too_large():
    with pytest.raises(ProgramTooLarge) as exc:
        assemble.assemble("CLF\n" * 255 + "DATA R0 1\n")
    assert exc.value.found == 257
    assert exc.value.maximum == 256


def test_program_too_large_before_label_errors():
    with pytest.raises(ProgramTooLarge):
        assemble.assemble("JMP nowhere\n" + "CLF\n" * 255)


def test_undefined_label():
    with pytest.raises(UndefinedLabel) as exc:
        assemble.assemble("CLF\n\nJMP nowhere\n")
    assert exc.value.name == 'nowhere'
    assert exc.value.line_num == 3


def test_label_out_of_range():
    with pytest.raises(LabelOutOfRange) as exc:
        assemble.assemble("JMP far\n" + "CLF\n" * 254 + "MARK far\n")
    assert exc.value.address == 257


@pytest.mark.parametrize("source, line_num", [
    ("MARK", 1),
    ("MARK a b", 1),
    ("ADD R0", 1),
    ("CLF\nADD R0 R1 R2", 2),
    ("DATA R0", 1),
    ("JMPR", 1),
    ("JMP a b", 1),
    ("JIF C", 1),
    ("CLF R0", 1),
    ("END now", 1),
])
def test_malformed_line(source, line_num):
    with pytest.raises(MalformedLine) as exc:
        assemble.assemble(source)
    assert exc.value.line_num == line_num


@pytest.mark.parametrize("source, token", [
    ("ADD R4 R0", 'R4'),
    ("ADD R0 r1", 'r1'),
    ("DATA X 1", 'X'),
    ("JMPR R", 'R'),
])
def test_invalid_register(source, token):
    with pytest.raises(InvalidRegister) as exc:
        assemble.assemble(source)
    assert exc.value.token == token


@pytest.mark.parametrize("token", ['-1', 'five', '0x10', '1.5'])
def test_invalid_immediate(token):
    with pytest.raises(InvalidImmediate) as exc:
        assemble.assemble(f"DATA R1 {token}")
    assert exc.value.token == token


def test_invalid_condition_flag():
    with pytest.raises(InvalidConditionFlag) as exc:
        assemble.assemble("MARK t\n\nJIF CX t")
    assert exc.value.token == 'X'
    assert exc.value.line_num == 3


def test_unknown_instruction():
    with pytest.raises(UnknownInstruction) as exc:
        assemble.assemble("CLF\nadd R0 R1")
    assert exc.value.token == 'add'
    assert exc.value.line_num == 2
    assert 'add R0 R1' in str(exc.value)


def test_errors_share_base():
    for cls in (MalformedLine, InvalidRegister, UnknownInstruction, InvalidImmediate,
                InvalidConditionFlag, UndefinedLabel, ProgramTooLarge, LabelOutOfRange):
        assert issubclass(cls, AssemblerError)


def test_assembler_is_reusable():
    asm = Assembler()
    asm.assemble("MARK a\nJMP a")
    assert asm.assemble("CLF") == ['01100000', END]
    assert asm.labels == {}


def test_format_listing():
    assert format_listing(['01100000', END]) == "01100000\n11001111\n"


def test_main_writes_listing(tmp_path, monkeypatch, capsys):
    src = tmp_path / "prog.asm"
    src.write_text("MARK loop\nDATA R0 1\nJMP loop\n")
    monkeypatch.setattr('sys.argv', ['assemble.py', str(src), '--dump-labels'])

    assemble.main()

    out = tmp_path / "prog.ms"
    assert out.read_text() == "00100000\n00000001\n01000000\n00000001\n11001111\n"
    assert "loop: 1" in capsys.readouterr().out


def test_main_writes_image(tmp_path, monkeypatch):
    src = tmp_path / "prog.asm"
    src.write_text("MARK top\nCLF\nJMP top\n")
    listing = tmp_path / "out.ms"
    image = tmp_path / "out.q8"
    monkeypatch.setattr('sys.argv', ['assemble.py', str(src), str(listing), '--image', str(image)])

    assemble.main()

    decoded = Image.decode(image.read_bytes())
    assert decoded.words == listing.read_text().split()
    assert decoded.labels == {'top': 1}


def test_main_reports_errors(tmp_path, monkeypatch, capsys):
    src = tmp_path / "bad.asm"
    src.write_text("JMP nowhere\n")
    monkeypatch.setattr('sys.argv', ['assemble.py', str(src)])

    with pytest.raises(SystemExit) as exc:
        assemble.main()

    assert exc.value.code == 1
    assert "Undefined label: nowhere" in capsys.readouterr().err
    assert not (tmp_path / "bad.ms").exists()


def test_main_disassembles_listing(tmp_path, monkeypatch, capsys):
    listing = tmp_path / "prog.ms"
    listing.write_text("00100010\n00000101\n11001111\n")
    monkeypatch.setattr('sys.argv', ['assemble.py', '-d', str(listing)])

    assemble.main()

    out = capsys.readouterr().out
    assert "DATA R2 5" in out
    assert "END" in out


def test_only_newlines_split_lines():
    assert assemble.assemble("# note\u2028ADD R0 R1\nCLF\n") == ['01100000', END]
    assert assemble.assemble("CLF\r\n# a\x0bADD R0 R0\r\nEND\r\n") == ['01100000', END, END]


def test_line_numbers_ignore_other_line_breaks():
    with pytest.raises(UndefinedLabel) as exc:
        assemble.assemble("# page\x0cbreak\x1cCLF\nJMP x")
    assert exc.value.line_num == 2


def test_crlf_line_text_is_trimmed():
    with pytest.raises(UnknownInstruction) as exc:
        assemble.assemble("CLF\r\nHALT\r\n")
    assert exc.value.line == "HALT"


def test_label_at_256_out_of_range():
    with pytest.raises(LabelOutOfRange) as exc:
        assemble.assemble("JMP far\n" + "CLF\n" * 253 + "MARK far\nCLF\n")
    assert exc.value.address == 256


def test_label_at_255_fits():
    words = assemble.assemble("JMP far\n" + "CLF\n" * 252 + "MARK far\nCLF\n")
    assert words[:2] == ['01000000', '11111111']
    assert len(words) == 256


def test_main_rejects_unencodable_image(tmp_path, monkeypatch, capsys):
    src = tmp_path / "p.asm"
    src.write_text("MARK " + "a" * 300 + "\nCLF\n")
    image = tmp_path / "p.q8"
    monkeypatch.setattr('sys.argv', ['assemble.py', str(src), '--image', str(image)])

    with pytest.raises(SystemExit) as exc:
        assemble.main()

    assert exc.value.code == 1
    assert "too long" in capsys.readouterr().err
    assert not (tmp_path / "p.ms").exists()
    assert not image.exists()


def test_main_disassembles_image(tmp_path, monkeypatch, capsys):
    image = tmp_path / "prog.q8"
    image.write_bytes(Image(assemble.assemble("MARK top\nCLF\nJMP top\n"), {'top': 1}).encode())
    monkeypatch.setattr('sys.argv', ['assemble.py', '--disassemble', str(image)])

    assemble.main()

    out = capsys.readouterr().out
    assert "MARK top" in out
    assert "JMP top" in out


def test_main_reports_truncated_image(tmp_path, monkeypatch, capsys):
    import struct
    from zstd import compress
    from executable import MAGIC
    image = tmp_path / "bad.q8"
    image.write_bytes(compress(struct.pack('<4sHH', MAGIC, 1, 9) + b'\x01', 3))
    monkeypatch.setattr('sys.argv', ['assemble.py', '-d', str(image)])

    with pytest.raises(SystemExit) as exc:
        assemble.main()

    assert exc.value.code == 1
    assert "Truncated word section" in capsys.readouterr().err
