import struct
import zlib

import pytest
from PIL import Image

import ggxx_tools
from ggxx_binary import StructuralMismatchError
from ggxx_obj import ObjectBinary, PaletteEntry
from ggxx_script import CellBegin, format_script
from ggxx_tools import (
    DFASFPAC_MAGIC, ZCMP_MAGIC, compress_wrapper, decompress_wrapper, find_pac_entry,
    first_mismatch, image_to_palette, palette_to_image, read_pac, select_entry,
)

from conftest import make_object_binary, make_palette


# =============================================================================
# Compression
# =============================================================================

def test_zcmp_layout():
    payload = b'object binary' * 20
    packed = compress_wrapper(payload)
    assert packed[:4] == ZCMP_MAGIC
    original, compressed = struct.unpack_from('<II', packed, 4)
    assert original == len(payload)
    assert compressed == len(packed) - 0x10
    assert packed[12:16] == b'\x00' * 4
    assert decompress_wrapper(packed) == payload


def test_dfasfpac_wrapper():
    payload = bytes(range(256))
    packed = compress_wrapper(payload, DFASFPAC_MAGIC)
    assert packed[:8] == DFASFPAC_MAGIC
    assert decompress_wrapper(packed) == payload


def test_plain_data_passes_through():
    assert decompress_wrapper(b'FPAC\x00\x00') == b'FPAC\x00\x00'


def test_wrapper_size_mismatch():
    compressed = zlib.compress(b'abc')
    packed = ZCMP_MAGIC + struct.pack('<II', 4, len(compressed)) + bytes(4) + compressed
    with pytest.raises(StructuralMismatchError):
        decompress_wrapper(packed)


# =============================================================================
# FPAC
# =============================================================================

def build_pac(files, style=0, string_size=0x10):
    """files: list of (name, contents)."""
    has_names = not (style & 0x2) and string_size > 0
    entry_size = (string_size if has_names else 0) + 16
    entry_size += (-entry_size) % 0x10
    data_start = 0x20 + entry_size * len(files)

    meta, blobs = bytearray(), bytearray()
    for i, (name, contents) in enumerate(files):
        entry = bytearray()
        if has_names:
            entry += name.encode('shift_jis').ljust(string_size, b'\x00')
        entry += struct.pack('<4I', i, len(blobs), len(contents), 0x1000 + i)
        meta += entry.ljust(entry_size, b'\x00')
        blobs += contents + bytes((-len(contents)) % 0x10)

    header = b'FPAC' + struct.pack('<5I', data_start, data_start + len(blobs), len(files),
                                   style, string_size if has_names else 0)
    return header.ljust(0x20, b'\x00') + bytes(meta) + bytes(blobs)


def test_read_named_pac():
    pac = build_pac([("sol.bin", b'SOL!'), ("ky.bin", b'KY' * 9)])
    entries = read_pac(pac)
    assert [e.name for e in entries] == ["sol.bin", "ky.bin"]
    assert entries[1].contents == b'KY' * 9
    assert entries[1].file_id == 1
    assert entries[1].hash_id == 0x1001


def test_read_id_only_pac():
    pac = build_pac([("", b'\x01\x02'), ("", b'\x03')], style=0x2)
    entries = read_pac(pac)
    assert [e.name for e in entries] == [None, None]
    assert entries[0].output_name == "0000_00001000.bin"
    assert entries[1].contents == b'\x03'


def test_read_compressed_pac():
    pac = build_pac([("a.bin", b'AAAA')])
    assert read_pac(compress_wrapper(pac))[0].contents == b'AAAA'


def test_read_pac_rejects_other_data():
    with pytest.raises(StructuralMismatchError):
        read_pac(b'NOPE' + bytes(0x20))


def test_find_pac_entry():
    entries = read_pac(build_pac([("sol.bin", b'S'), ("ky.bin", b'K')]))
    assert find_pac_entry(entries, "ky.bin").contents == b'K'
    assert find_pac_entry(entries, "0").contents == b'S'
    assert find_pac_entry(entries, "0x1001").contents == b'K'
    with pytest.raises(KeyError):
        find_pac_entry(entries, "may.bin")
    with pytest.raises(KeyError):
        find_pac_entry(entries, "7")


# =============================================================================
# Palette images
# =============================================================================

def test_palette_to_image():
    palette = PaletteEntry([0] * 8, [0x44332211] + [0] * 255)
    image = palette_to_image(palette)
    assert image.size == (16, 16)
    assert image.mode == 'RGBA'
    assert image.getpixel((0, 0)) == (0x11, 0x22, 0x33, 0x44)


def test_image_to_palette_keeps_unknowns():
    template = make_palette(3)
    image = palette_to_image(make_palette(9))
    rebuilt = image_to_palette(image, template)
    assert rebuilt.unknown == template.unknown
    assert rebuilt.colors == make_palette(9).colors


def test_image_to_palette_size_check():
    with pytest.raises(ValueError):
        image_to_palette(Image.new('RGBA', (8, 8)), make_palette())


# =============================================================================
# Object binary helpers
# =============================================================================

def test_first_mismatch():
    assert first_mismatch(b'abc', b'abc') is None
    assert first_mismatch(b'abc', b'abd') == 2
    assert first_mismatch(b'abc', b'ab') == 2


def test_select_entry(object_binary):
    assert select_entry(object_binary, 'player') is object_binary.player
    assert select_entry(object_binary, '1') is object_binary.objects[1]
    with pytest.raises(ValueError):
        select_entry(object_binary, '5')
    with pytest.raises(ValueError):
        select_entry(object_binary, 'boss')


# =============================================================================
# CLI
# =============================================================================

def test_usage(capsys):
    ggxx_tools.main([])
    assert "Usage:" in capsys.readouterr().out


def test_obj_verify(object_file, capsys):
    ggxx_tools.main(['obj-verify', str(object_file)])
    assert "[OK]" in capsys.readouterr().out


def test_obj_verify_mismatch(object_file, monkeypatch, capsys):
    monkeypatch.setattr(ObjectBinary, "encode", lambda self: b"\x00")
    with pytest.raises(SystemExit) as excinfo:
        ggxx_tools.main(["obj-verify", str(object_file)])
    assert excinfo.value.code == 1
    assert "first difference at 0x0" in capsys.readouterr().out


def test_obj_verify_compressed(tmp_path, object_bytes, capsys):
    path = tmp_path / "sol.zcmp"
    path.write_bytes(compress_wrapper(object_bytes))
    ggxx_tools.main(['obj-verify', str(path)])
    assert "[OK]" in capsys.readouterr().out


def test_obj_info(object_file, capsys):
    ggxx_tools.main(['obj-info', str(object_file)])
    out = capsys.readouterr().out
    assert "2 objects" in out
    assert "Player: 2 cells, 2 sprites, 2 actions, 2 palettes" in out
    assert "unused=0xDEADBEEF" in out


def test_missing_file_exits(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        ggxx_tools.main(['obj-info', str(tmp_path / "missing.bin")])
    assert excinfo.value.code == 1
    assert capsys.readouterr().out.startswith("Error:")


def test_batch_verify(tmp_path, object_bytes, capsys):
    (tmp_path / "a.bin").write_bytes(object_bytes)
    (tmp_path / "b.bin").write_bytes(b'\x00' * 8)
    ggxx_tools.main(['batch-verify', str(tmp_path)])

    out = capsys.readouterr().out
    assert "[ERROR] b.bin" in out
    assert "1/2 files" in out
    log = (tmp_path / "verify_log.txt").read_text(encoding='utf-8').splitlines()
    assert log[0] == "a.bin OK"
    assert log[1].startswith("b.bin ERROR")


def test_script_export_import(object_file, tmp_path, object_binary):
    listing = tmp_path / "obj1.txt"
    ggxx_tools.main(['script-export', str(object_file), str(listing), '--entry', '1'])
    assert listing.read_text(encoding='utf-8') == format_script(object_binary.objects[1].script)

    text = listing.read_text(encoding='utf-8').replace("cell_no=1", "cell_no=9")
    listing.write_text(text, encoding='utf-8')
    output = tmp_path / "out.bin"
    ggxx_tools.main(['script-import', str(object_file), str(listing), str(output), '--entry', '1'])

    rebuilt = ObjectBinary.decode(output.read_bytes())
    assert rebuilt.objects[1].script.actions[0].instructions[0] == CellBegin(duration=1, cell_no=9)
    assert rebuilt.objects[0] == object_binary.objects[0]
    assert rebuilt.player == object_binary.player


def test_script_import_unchanged_is_identical(object_file, tmp_path):
    listing = tmp_path / "player.txt"
    output = tmp_path / "out.bin"
    ggxx_tools.main(['script-export', str(object_file), str(listing)])
    ggxx_tools.main(['script-import', str(object_file), str(listing), str(output), '--no-verify'])
    assert output.read_bytes() == object_file.read_bytes()


def test_palette_export_import(object_file, tmp_path):
    folder = tmp_path / "pal"
    ggxx_tools.main(['pal-export', str(object_file), str(folder)])
    assert sorted(p.name for p in folder.iterdir()) == ["pal_000.png", "pal_001.png"]

    output = tmp_path / "out.bin"
    ggxx_tools.main(['pal-import', str(object_file), str(folder), str(output)])
    assert output.read_bytes() == object_file.read_bytes()


def test_palette_import_replaces_colors(object_file, tmp_path):
    folder = tmp_path / "pal"
    folder.mkdir()
    Image.new('RGBA', (16, 16), (1, 2, 3, 4)).save(folder / "pal_001.png")

    output = tmp_path / "out.bin"
    ggxx_tools.main(['pal-import', str(object_file), str(folder), str(output)])
    palettes = ObjectBinary.decode(output.read_bytes()).player.palettes
    assert palettes[0] == make_palette(0)
    assert palettes[1].colors == [0x04030201] * 256
    assert palettes[1].unknown == make_palette(1).unknown


def test_zcmp_commands(tmp_path, object_bytes):
    raw, packed, unpacked = tmp_path / "raw.bin", tmp_path / "packed.bin", tmp_path / "out.bin"
    raw.write_bytes(object_bytes)
    ggxx_tools.main(['zcmp-pack', str(raw), str(packed)])
    assert packed.read_bytes()[:4] == ZCMP_MAGIC
    ggxx_tools.main(['zcmp-unpack', str(packed), str(unpacked)])
    assert unpacked.read_bytes() == object_bytes


def test_pac_commands(tmp_path):
    pac = tmp_path / "chars.pac"
    pac.write_bytes(build_pac([("sol.bin", b'SOL!'), ("ky.bin", b'KY')]))

    folder = tmp_path / "out"
    ggxx_tools.main(['pac-extract', str(pac), str(folder)])
    assert (folder / "sol.bin").read_bytes() == b'SOL!'

    single = tmp_path / "ky.bin"
    ggxx_tools.main(['pac-get', str(pac), 'ky.bin', str(single)])
    assert single.read_bytes() == b'KY'


def test_palette_import_splits_changed_alias(tmp_path, capsys):
    binary = make_object_binary()
    binary.player.palettes = [make_palette(0), make_palette(0)]
    binary.player.palette_aliases = [1]
    path = tmp_path / "sol.bin"
    path.write_bytes(binary.encode())
    folder = tmp_path / "pal"
    folder.mkdir()
    Image.new('RGBA', (16, 16), (1, 2, 3, 4)).save(folder / "pal_001.png")

    output = tmp_path / "out.bin"
    ggxx_tools.main(['pal-import', str(path), str(folder), str(output)])
    assert "[WARN] Palette 1 no longer matches palette 0" in capsys.readouterr().out
    player = ObjectBinary.decode(output.read_bytes()).player
    assert player.palette_aliases == []
    assert player.palettes[0] == make_palette(0)
    assert player.palettes[1].colors == [0x04030201] * 256
