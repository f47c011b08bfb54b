#!/usr/bin/env python3
"""
GGXX Tools - Tools for the XX-series object binaries
Verifies and rebuilds object binaries, exports/imports scripts and palettes,
and handles ZCMP/DFASFPAC compression and FPAC archives
"""

import logging
import struct
import sys
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

try:
    from PIL import Image
    import numpy as np
except ImportError:
    print("Error: Requires Pillow and NumPy")
    print("Install with: pip install pillow numpy")
    sys.exit(1)

from ggxx_binary import StructuralMismatchError, needed_to_align
from ggxx_obj import PALETTE_COLORS, Entry, ObjectBinary, PaletteEntry
from ggxx_script import format_script, parse_actions


# =============================================================================
# Compression wrappers
# =============================================================================

ZCMP_MAGIC = b'ZCMP'
DFASFPAC_MAGIC = b'DFASFPAC'
WRAPPER_MAGICS = (ZCMP_MAGIC, DFASFPAC_MAGIC)
WRAPPER_HEADER_SIZE = 0x10


def detect_wrapper(data: bytes) -> Optional[bytes]:
    """Returns the compression magic data starts with, or None."""
    for magic in WRAPPER_MAGICS:
        if data.startswith(magic):
            return magic
    return None


def decompress_wrapper(data: bytes) -> bytes:
    """Unwraps ZCMP/DFASFPAC data. Anything else is returned unchanged."""
    magic = detect_wrapper(data)
    if magic is None:
        return data

    original_size, compressed_size = struct.unpack_from('<II', data, len(magic))
    compressed = data[WRAPPER_HEADER_SIZE:WRAPPER_HEADER_SIZE + compressed_size]
    if len(compressed) != compressed_size:
        raise StructuralMismatchError(
            f"{magic.decode()} stream truncated: {len(compressed)} of {compressed_size} bytes")

    payload = zlib.decompress(compressed)
    if len(payload) != original_size:
        raise StructuralMismatchError(
            f"{magic.decode()} size mismatch: header says {original_size}, got {len(payload)}")
    return payload


def compress_wrapper(data: bytes, magic: bytes = ZCMP_MAGIC) -> bytes:
    compressed = zlib.compress(data, level=9)
    header = magic + struct.pack('<II', len(data), len(compressed))
    header += b'\x00' * (WRAPPER_HEADER_SIZE - len(header))
    return header + compressed


# =============================================================================
# FPAC archives
# =============================================================================

PAC_MAGIC = b'FPAC'
PAC_HEADER_SIZE = 0x20
PAC_ID_ONLY = 0x2


@dataclass
class PacEntry:
    name: Optional[str]
    file_id: int
    hash_id: int
    contents: bytes

    @property
    def output_name(self) -> str:
        if self.name:
            return self.name
        return f"{self.file_id:04d}_{self.hash_id:08X}.bin"


def read_pac(data: bytes) -> List[PacEntry]:
    """Reads every entry of an FPAC archive (compressed archives included)."""
    data = decompress_wrapper(data)
    if not data.startswith(PAC_MAGIC):
        raise StructuralMismatchError(f"Not an FPAC archive (magic: {data[:4]})", 0)

    data_start, total_size, file_count, style, string_size = struct.unpack_from('<5I', data, 4)
    has_names = not (style & PAC_ID_ONLY) and string_size > 0

    entries = []
    pos = PAC_HEADER_SIZE
    for i in range(file_count):
        name = None
        if has_names:
            raw = data[pos:pos + string_size]
            name = raw.split(b'\x00', 1)[0].decode('shift_jis', errors='replace')
            pos += string_size

        if pos + 16 > len(data):
            raise StructuralMismatchError(f"FPAC entry {i} runs past the header", pos)
        file_id, offset, size, hash_id = struct.unpack_from('<4I', data, pos)
        pos += 16
        pos += needed_to_align(pos, 0x10)

        start = data_start + offset
        if start + size > len(data):
            raise StructuralMismatchError(f"FPAC entry {i} contents run past the archive", start)
        entries.append(PacEntry(name, file_id, hash_id, data[start:start + size]))

    return entries


def find_pac_entry(entries: List[PacEntry], key: str) -> PacEntry:
    """Finds an entry by name, or by numeric id / hash."""
    for entry in entries:
        if entry.name == key:
            return entry
    try:
        number = int(key, 0)
    except ValueError:
        raise KeyError(f"No entry named {key!r}") from None
    for entry in entries:
        if number in (entry.file_id, entry.hash_id):
            return entry
    raise KeyError(f"No entry with id {key}")


def pac_extract(pac_path: str, output_folder: str):
    """Extracts all files from an FPAC archive"""
    pac_path = Path(pac_path)
    output_folder = Path(output_folder)
    output_folder.mkdir(parents=True, exist_ok=True)

    entries = read_pac(pac_path.read_bytes())
    for entry in entries:
        output_path = output_folder / entry.output_name
        output_path.write_bytes(entry.contents)
        print(f"-> {output_path.name}")

    print(f"\n[OK] Extraction complete: {len(entries)} files")


def pac_get(pac_path: str, key: str, output_path: str):
    entry = find_pac_entry(read_pac(Path(pac_path).read_bytes()), key)
    Path(output_path).write_bytes(entry.contents)
    print(f"Extracted {entry.output_name} -> {Path(output_path).name} ({len(entry.contents)} bytes)")


def zcmp_unpack(input_path: str, output_path: str):
    data = Path(input_path).read_bytes()
    magic = detect_wrapper(data)
    if magic is None:
        raise ValueError(f"{Path(input_path).name} is not ZCMP/DFASFPAC compressed")
    payload = decompress_wrapper(data)
    Path(output_path).write_bytes(payload)
    print(f"Decompressed {Path(input_path).name} -> {Path(output_path).name} "
          f"({magic.decode()}, {len(data)} -> {len(payload)} bytes)")


def zcmp_pack(input_path: str, output_path: str):
    data = Path(input_path).read_bytes()
    packed = compress_wrapper(data)
    Path(output_path).write_bytes(packed)
    print(f"Compressed {Path(input_path).name} -> {Path(output_path).name} "
          f"({len(data)} -> {len(packed)} bytes)")


# =============================================================================
# Palette images
# =============================================================================

PALETTE_IMAGE_SIZE = (16, 16)


def palette_to_image(entry: PaletteEntry) -> Image.Image:
    """256 packed colors -> 16x16 RGBA image, bytes taken as stored."""
    pixels = np.array(entry.colors, dtype='<u4').view(np.uint8).reshape(16, 16, 4)
    return Image.fromarray(pixels)


def image_to_palette(image: Image.Image, template: PaletteEntry) -> PaletteEntry:
    """16x16 image -> palette with the template's unknown fields."""
    if image.size != PALETTE_IMAGE_SIZE:
        raise ValueError(f"Palette image must be 16x16, got {image.size[0]}x{image.size[1]}")
    pixels = np.ascontiguousarray(np.asarray(image.convert('RGBA'), dtype=np.uint8))
    colors = pixels.reshape(PALETTE_COLORS, 4).view('<u4').reshape(PALETTE_COLORS)
    return PaletteEntry(list(template.unknown), [int(c) for c in colors])


# =============================================================================
# Object binary files
# =============================================================================

def load_object_binary(path: Union[str, Path]) -> Tuple[ObjectBinary, Optional[bytes]]:
    """Decodes an object binary file. Returns (model, compression magic or None)."""
    data = Path(path).read_bytes()
    magic = detect_wrapper(data)
    return ObjectBinary.decode(decompress_wrapper(data)), magic


def save_object_binary(obj: ObjectBinary, path: Union[str, Path], magic: Optional[bytes] = None):
    data = obj.encode()
    if magic is not None:
        data = compress_wrapper(data, magic)
    Path(path).write_bytes(data)


def select_entry(obj: ObjectBinary, key: str) -> Entry:
    """'player' or an object index."""
    if key.lower() == 'player':
        return obj.player
    try:
        index = int(key, 0)
    except ValueError:
        raise ValueError(f"Entry must be 'player' or an object index, got {key!r}") from None
    if not 0 <= index < len(obj.objects):
        raise ValueError(f"Object {index} out of range (file has {len(obj.objects)} objects)")
    return obj.objects[index]


def first_mismatch(a: bytes, b: bytes) -> Optional[int]:
    """Offset of the first differing byte, or None if equal."""
    for i, (x, y) in enumerate(zip(a, b)):
        if x != y:
            return i
    if len(a) != len(b):
        return min(len(a), len(b))
    return None


def obj_info(obj_path: str):
    obj, magic = load_object_binary(obj_path)
    print(f"{Path(obj_path).name}: {len(obj.objects)} objects, {len(obj.audio.blobs)} audio blobs"
          + (f" ({magic.decode()} compressed)" if magic else ""))

    p = obj.player
    print(f"  Player: {len(p.cells)} cells, {len(p.sprites)} sprites, "
          f"{len(p.script.actions)} actions, {len(p.palettes)} palettes")
    for i, o in enumerate(obj.objects):
        print(f"  Object {i}: {len(o.cells)} cells, {len(o.sprites)} sprites, "
              f"{len(o.script.actions)} actions, unused=0x{o.unused:08X}")


def obj_verify(obj_path: str) -> bool:
    """Decodes and re-encodes a file, comparing the result byte for byte."""
    obj_path = Path(obj_path)
    data = decompress_wrapper(obj_path.read_bytes())
    rebuilt = ObjectBinary.decode(data).encode()

    offset = first_mismatch(data, rebuilt)
    if offset is None:
        print(f"[OK] {obj_path.name}: {len(data)} bytes rebuilt identically")
        return True

    print(f"[ERROR] {obj_path.name}: first difference at 0x{offset:X} "
          f"(original {len(data)} bytes, rebuilt {len(rebuilt)} bytes)")
    return False


def batch_verify(input_folder: str):
    """Verifies every file in a folder and writes verify_log.txt."""
    input_folder = Path(input_folder)
    log_path = input_folder / "verify_log.txt"
    log_entries = []
    passed = 0

    files = [f for f in sorted(input_folder.iterdir()) if f.is_file() and f != log_path]
    for f in files:
        try:
            ok = obj_verify(str(f))
            log_entries.append(f"{f.name} {'OK' if ok else 'MISMATCH'}")
            passed += ok
        except Exception as e:
            print(f"[ERROR] {f.name}: {e}")
            log_entries.append(f"{f.name} ERROR {e}")

    log_path.write_text('\n'.join(log_entries), encoding='utf-8')
    print(f"\n[OK] {passed}/{len(files)} files rebuilt identically")
    print(f"[OK] Log saved: {log_path}")


def script_export(obj_path: str, output_path: str, entry_key: str = 'player'):
    obj, _ = load_object_binary(obj_path)
    entry = select_entry(obj, entry_key)
    Path(output_path).write_text(format_script(entry.script), encoding='utf-8')
    print(f"Exported {Path(obj_path).name} [{entry_key}] -> {Path(output_path).name} "
          f"({len(entry.script.actions)} actions)")


def script_import(obj_path: str, script_path: str, output_path: str, entry_key: str = 'player',
                  verify: bool = True):
    """Replaces the actions of one entry with a script listing and rebuilds."""
    obj, magic = load_object_binary(obj_path)
    entry = select_entry(obj, entry_key)

    actions = parse_actions(Path(script_path).read_text(encoding='utf-8'))
    if not actions or not actions[-1].is_script_end:
        print(f"[WARN] {Path(script_path).name}: last action does not end in ScriptEnd")
    entry.script.actions = actions

    save_object_binary(obj, output_path, magic)
    print(f"Rebuilt {Path(obj_path).name} [{entry_key}] -> {Path(output_path).name} "
          f"({len(actions)} actions)")

    if verify:
        reloaded, _ = load_object_binary(output_path)
        if select_entry(reloaded, entry_key).script.actions != actions:
            raise ValueError(f"{Path(output_path).name} does not decode back to the imported script")
        print("[OK] Rebuilt file decodes back to the imported script")


def pal_export(obj_path: str, output_folder: str):
    output_folder = Path(output_folder)
    output_folder.mkdir(parents=True, exist_ok=True)

    obj, _ = load_object_binary(obj_path)
    for i, palette in enumerate(obj.player.palettes):
        png_path = output_folder / f"pal_{i:03d}.png"
        palette_to_image(palette).save(png_path, 'PNG')
        print(f"-> {png_path.name}")

    print(f"\n[OK] Exported {len(obj.player.palettes)} palettes")


def pal_import(obj_path: str, input_folder: str, output_path: str):
    input_folder = Path(input_folder)
    obj, magic = load_object_binary(obj_path)

    replaced = 0
    for i, palette in enumerate(obj.player.palettes):
        png_path = input_folder / f"pal_{i:03d}.png"
        if not png_path.exists():
            print(f"[WARN] No image for palette {i}: {png_path.name}")
            continue
        with Image.open(png_path) as img:
            obj.player.palettes[i] = image_to_palette(img, palette)
        replaced += 1
        print(f"<- {png_path.name}")

    player = obj.player
    split = [i for i in player.palette_aliases if player.palettes[i] != player.palettes[i - 1]]
    for i in split:
        print(f"[WARN] Palette {i} no longer matches palette {i - 1}, storing it separately")
    player.palette_aliases = [i for i in player.palette_aliases if i not in split]

    save_object_binary(obj, output_path, magic)
    print(f"\n[OK] Replaced {replaced} palettes -> {Path(output_path).name}")


# =============================================================================
# CLI
# =============================================================================

def print_usage():
    print("""
GGXX Tools - Tools for the XX-series object binaries

Usage:
  Object Binaries:
    ggxx-tools obj-info <file>
    ggxx-tools obj-verify <file>
    ggxx-tools batch-verify <folder>

  Scripts:
    ggxx-tools script-export <file> <output.txt> [--entry player|N]
    ggxx-tools script-import <file> <script.txt> <output> [--entry player|N] [--no-verify]

  Palettes:
    ggxx-tools pal-export <file> <png_folder>
    ggxx-tools pal-import <file> <png_folder> <output>

  Compression / Archives:
    ggxx-tools zcmp-unpack <input> <output>
    ggxx-tools zcmp-pack <input> <output>
    ggxx-tools pac-extract <file.pac> <output_folder>
    ggxx-tools pac-get <file.pac> <name|id> <output>

Options:
  --entry      Script to work on: 'player' (default) or an object index
  --no-verify  Skip decoding the rebuilt file after script-import
  --verbose    Print structural debug output while decoding

Note: ZCMP/DFASFPAC compressed object binaries are unpacked automatically
      and written back with the same compression.
""")


def main(argv: Optional[List[str]] = None):
    args = sys.argv[1:] if argv is None else list(argv)

    # Parse options
    positional = []
    entry_key, verify, verbose = 'player', True, False
    i = 0
    while i < len(args):
        if args[i] == '--entry' and i + 1 < len(args):
            entry_key = args[i + 1]; i += 2
        elif args[i] == '--no-verify':
            verify = False; i += 1
        elif args[i] == '--verbose':
            verbose = True; i += 1
        else:
            positional.append(args[i]); i += 1

    if len(positional) < 1:
        print_usage()
        return

    if verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(name)s: %(message)s')

    cmd = positional[0].lower()
    args = positional

    try:
        if cmd == 'obj-info' and len(args) >= 2:
            obj_info(args[1])

        elif cmd == 'obj-verify' and len(args) >= 2:
            if not obj_verify(args[1]):
                sys.exit(1)

        elif cmd == 'batch-verify' and len(args) >= 2:
            batch_verify(args[1])

        elif cmd == 'script-export' and len(args) >= 3:
            script_export(args[1], args[2], entry_key)

        elif cmd == 'script-import' and len(args) >= 4:
            script_import(args[1], args[2], args[3], entry_key, verify)

        elif cmd == 'pal-export' and len(args) >= 3:
            pal_export(args[1], args[2])

        elif cmd == 'pal-import' and len(args) >= 4:
            pal_import(args[1], args[2], args[3])

        elif cmd == 'zcmp-unpack' and len(args) >= 3:
            zcmp_unpack(args[1], args[2])

        elif cmd == 'zcmp-pack' and len(args) >= 3:
            zcmp_pack(args[1], args[2])

        elif cmd == 'pac-extract' and len(args) >= 3:
            pac_extract(args[1], args[2])

        elif cmd == 'pac-get' and len(args) >= 4:
            pac_get(args[1], args[2], args[3])

        else:
            print_usage()

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
