"""
GGXX Object Binary codec - collision cells, sprites, palettes, scripts, audio

File layout:
    top-level table     [player, object..., audio] absolute u32 offsets
    player entry        header + cells + sprites + script + palettes
    object entries      header + cells + sprites + script
    audio section       big-endian table of opaque blobs, last one runs to EOF

Entry header: u32 cell, sprite, script and palette (player) / unused (object)
pointers, relative to the entry start. Each block starts right where the
previous one ends; cell, sprite and palette blocks are zero padded to 0x10,
the script block until its length is 0xA00 past a 0x1000 page.

Offsets never live in the model: decode resolves them, encode recomputes
them bottom-up, so an unedited file re-encodes byte for byte.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

from ggxx_binary import (
    SENTINEL_FILL, ZERO_FILL, ByteReader, IncompleteConsumptionError, PointerTable,
    StructuralMismatchError, UnresolvedHeuristicError, is_filled, pad_to,
)
from ggxx_script import ObjectScriptData, PlayerScriptData

logger = logging.getLogger(__name__)


ENTRY_HEADER_FORMAT = '<4I'
ENTRY_HEADER_SIZE = 0x10
BLOCK_ALIGNMENT = 0x10
CELL_ALIGNMENT = 4
SCRIPT_PAGE_SIZE = 0x1000
SCRIPT_PAGE_REMAINDER = 0xA00

BOX_FORMAT = '<hhHHI'
SPRITE_INFO_FORMAT = '<hhIH'
SPRITE_HEADER_FORMAT = '<8H'
SPRITE_HEADER_SIZE = 0x10
PALETTE_FORMAT = '<8H256I'
PALETTE_SIZE = struct.calcsize(PALETTE_FORMAT)
PALETTE_COLORS = 256

AUDIO_BYTE_ORDER = '>'

# Dwords that close the last sprite: (low word, high word step, high word ceiling)
SPRITE_TAIL_PATTERNS = (
    (0x0004, 0x0004, 0x100),
    (0x0008, 0x0008, 0x200),
    (0x0010, 0x0010, 0x400),
    (0x0020, 0x0020, 0x800),
)
SPRITE_FILL_TERMINATOR_SIZE = 8
DEFAULT_SPRITE_TERMINATOR = bytes([SENTINEL_FILL]) * SPRITE_FILL_TERMINATOR_SIZE


# =============================================================================
# Collision cells
# =============================================================================

@dataclass
class CollisionBox:
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    box_type: int = 0


@dataclass
class SpriteInfo:
    x: int = 0
    y: int = 0
    unk: int = 0
    index: int = 0


@dataclass
class CellEntry:
    boxes: List[CollisionBox] = field(default_factory=list)
    sprite_info: SpriteInfo = field(default_factory=SpriteInfo)

    @classmethod
    def decode(cls, reader: ByteReader) -> 'CellEntry':
        count = reader.u32()
        boxes = [CollisionBox(*reader.unpack(BOX_FORMAT)) for _ in range(count)]
        return cls(boxes, SpriteInfo(*reader.unpack(SPRITE_INFO_FORMAT)))

    def encode(self) -> bytes:
        out = bytearray(struct.pack('<I', len(self.boxes)))
        for box in self.boxes:
            out.extend(struct.pack(BOX_FORMAT, box.x, box.y, box.width, box.height, box.box_type))
        info = self.sprite_info
        out.extend(struct.pack(SPRITE_INFO_FORMAT, info.x, info.y, info.unk, info.index))
        return bytes(out)


def _expect_empty_array(reader: ByteReader, table: PointerTable, end: int, what: str):
    reader.expect_trailer(table.base + table.size, end, table.padding, f"{what} trailer")


def _decode_array(reader: ByteReader, start: int, end: int, decode_one, what: str,
                  gap: str) -> Tuple[list, List[int]]:
    """
    Decodes a table of fixed-shape entries. Returns (entries, aliases), where
    aliases lists the slots sharing the previous slot's offset; those get
    their own copy of the shared entry and no gap check.
    """
    table = PointerTable.read(reader, start)
    if not table:
        _expect_empty_array(reader, table, end, what)
        return [], []

    aliases = table.aliases()
    entries = []
    for i in range(len(table)):
        pos, length, is_last = table.resolve_span(i, end - start)
        reader.seek(pos)
        entries.append(decode_one(reader))
        if i in aliases:
            continue
        if is_last:
            reader.expect_trailer(reader.tell(), pos + length, table.padding, f"{what} trailer")
        else:
            reader.expect_fill(reader.tell(), pos + length, ZERO_FILL, f"{gap} {i} alignment")
    return entries, aliases


def decode_cells(reader: ByteReader, start: int, end: int) -> Tuple[List[CellEntry], List[int]]:
    cells, aliases = _decode_array(reader, start, end, CellEntry.decode, "Cell array", "Cell")
    logger.debug("Cells at 0x%X: %d entries, %d aliased", start, len(cells), len(aliases))
    return cells, aliases


def encode_cells(cells: Sequence[CellEntry], aliases: Sequence[int] = ()) -> bytes:
    table, data = PointerTable.write([pad_to(cell.encode(), CELL_ALIGNMENT) for cell in cells],
                                     aliases=aliases)
    return table + data


# =============================================================================
# Sprites
# =============================================================================

@dataclass
class SpriteEntry:
    """
    One sprite blob. The payload is opaque; terminator holds whatever the
    end-of-array scan stripped from the last sprite (empty elsewhere).
    """
    header: List[int] = field(default_factory=lambda: [0] * 8)
    payload: bytes = b''
    terminator: bytes = b''

    def encode(self, final: bool = False) -> bytes:
        out = struct.pack(SPRITE_HEADER_FORMAT, *self.header) + bytes(self.payload)
        if final:
            return out + (bytes(self.terminator) or DEFAULT_SPRITE_TERMINATOR)
        return out + bytes(self.terminator)


def match_sprite_terminator(scanned: bytes) -> int:
    """
    Returns how many bytes at the end of scanned close the last sprite,
    or 0 when the scan should go on. scanned must end on a dword boundary.
    """
    if len(scanned) >= SPRITE_FILL_TERMINATOR_SIZE:
        tail = scanned[-SPRITE_FILL_TERMINATOR_SIZE:]
        if is_filled(tail, SENTINEL_FILL) or is_filled(tail, ZERO_FILL):
            return SPRITE_FILL_TERMINATOR_SIZE

    low, high = struct.unpack('<HH', scanned[-4:])
    for tag, step, ceiling in SPRITE_TAIL_PATTERNS:
        if low == tag and 0 < high <= ceiling and high % step == 0:
            return 4
    return 0


def resolve_final_sprite(data: bytes, start: int, limit: int) -> Tuple[bytes, bytes]:
    """
    The last sprite has no following offset, so its end is found by scanning
    dwords from start until a terminator shows up. Returns (payload, terminator).
    """
    pos = start
    while pos + 4 <= limit:
        pos += 4
        size = match_sprite_terminator(data[max(start, pos - SPRITE_FILL_TERMINATOR_SIZE):pos])
        if size:
            return data[start:pos - size], data[pos - size:pos]
    raise UnresolvedHeuristicError(
        f"No sprite terminator between 0x{start:X} and 0x{limit:X}")


def decode_sprites(reader: ByteReader, start: int, end: int) -> List[SpriteEntry]:
    table = PointerTable.read(reader, start)
    if not table:
        _expect_empty_array(reader, table, end, "Sprite array")
        return []

    sprites = []
    last = len(table) - 1
    for i in range(last):
        pos, length = table.resolve(i, end - start)
        if length <= 0:
            raise StructuralMismatchError(
                f"Sprite {i} offset 0x{table[i]:X} is not below the next (0x{table[i + 1]:X})",
                start)
        if length < SPRITE_HEADER_SIZE:
            raise StructuralMismatchError(f"Sprite {i} is shorter than its header", pos)
        reader.seek(pos)
        header = list(reader.unpack(SPRITE_HEADER_FORMAT))
        sprites.append(SpriteEntry(header, reader.read(length - SPRITE_HEADER_SIZE)))

    pos, _ = table.resolve(last, end - start)
    reader.seek(pos)
    header = list(reader.unpack(SPRITE_HEADER_FORMAT))
    payload, terminator = resolve_final_sprite(reader.data, reader.tell(), end)
    sprites.append(SpriteEntry(header, payload, terminator))

    tail = reader.tell() + len(payload) + len(terminator)
    reader.expect_trailer(tail, end, table.padding, "Sprite array trailer")

    logger.debug("Sprites at 0x%X: %d entries, last terminator %s",
                 start, len(sprites), terminator.hex().upper())
    return sprites


def encode_sprites(sprites: Sequence[SpriteEntry]) -> bytes:
    last = len(sprites) - 1
    table, data = PointerTable.write([s.encode(final=(i == last)) for i, s in enumerate(sprites)])
    return table + data


# =============================================================================
# Palettes
# =============================================================================

@dataclass
class PaletteEntry:
    unknown: List[int] = field(default_factory=lambda: [0] * 8)
    colors: List[int] = field(default_factory=lambda: [0] * PALETTE_COLORS)

    @classmethod
    def decode(cls, reader: ByteReader) -> 'PaletteEntry':
        values = reader.unpack(PALETTE_FORMAT)
        return cls(list(values[:8]), list(values[8:]))

    def encode(self) -> bytes:
        return struct.pack(PALETTE_FORMAT, *self.unknown, *self.colors)


def decode_palettes(reader: ByteReader, start: int,
                    end: int) -> Tuple[List[PaletteEntry], List[int]]:
    return _decode_array(reader, start, end, PaletteEntry.decode, "Palette array", "Palette")


def encode_palettes(palettes: Sequence[PaletteEntry], aliases: Sequence[int] = ()) -> bytes:
    table, data = PointerTable.write([p.encode() for p in palettes], aliases=aliases)
    return table + data


# =============================================================================
# Entries
# =============================================================================

def script_padding(length: int) -> int:
    """Zero bytes that bring a script block to 0xA00 past a page boundary."""
    return (SCRIPT_PAGE_REMAINDER - length) % SCRIPT_PAGE_SIZE


def _read_entry_header(reader: ByteReader, start: int) -> Tuple[int, int, int, int]:
    reader.seek(start)
    pointers = reader.unpack(ENTRY_HEADER_FORMAT)
    reader.expect_fill(start + ENTRY_HEADER_SIZE, start + pointers[0], ZERO_FILL,
                       "Entry header gap")
    return pointers


def _decode_script_block(reader: ByteReader, cls, start: int, end: int):
    reader.seek(start)
    script = cls.decode(reader)
    reader.expect_fill(reader.tell(), end, ZERO_FILL, "Script padding")
    return script


def _layout_entry(blocks: Sequence[bytes], fourth: Optional[int] = None) -> bytes:
    """blocks: cells, sprites, script (+ palettes). Returns header + blocks."""
    pointers = []
    running = ENTRY_HEADER_SIZE
    for block in blocks:
        pointers.append(running)
        running += len(block)
    if fourth is not None:
        pointers.append(fourth)
    return struct.pack(ENTRY_HEADER_FORMAT, *pointers) + b''.join(blocks)


def _script_block(script_bytes: bytes) -> bytes:
    return script_bytes + bytes(script_padding(len(script_bytes)))


@dataclass
class PlayerEntry:
    cells: List[CellEntry] = field(default_factory=list)
    sprites: List[SpriteEntry] = field(default_factory=list)
    script: PlayerScriptData = field(default_factory=PlayerScriptData)
    palettes: List[PaletteEntry] = field(default_factory=list)
    # table slots that point at the same bytes as the slot before them
    cell_aliases: List[int] = field(default_factory=list)
    palette_aliases: List[int] = field(default_factory=list)

    @classmethod
    def decode(cls, reader: ByteReader, start: int, end: int) -> 'PlayerEntry':
        cell_ptr, sprite_ptr, script_ptr, palette_ptr = _read_entry_header(reader, start)
        cells, cell_aliases = decode_cells(reader, start + cell_ptr, start + sprite_ptr)
        sprites = decode_sprites(reader, start + sprite_ptr, start + script_ptr)
        script = _decode_script_block(reader, PlayerScriptData, start + script_ptr,
                                      start + palette_ptr)
        palettes, palette_aliases = decode_palettes(reader, start + palette_ptr, end)
        logger.debug("Player at 0x%X: %d cells, %d sprites, %d actions, %d palettes",
                     start, len(cells), len(sprites), len(script.actions), len(palettes))
        return cls(cells, sprites, script, palettes, cell_aliases, palette_aliases)

    def encode(self) -> bytes:
        return _layout_entry([
            pad_to(encode_cells(self.cells, self.cell_aliases), BLOCK_ALIGNMENT),
            pad_to(encode_sprites(self.sprites), BLOCK_ALIGNMENT),
            _script_block(self.script.encode()),
            pad_to(encode_palettes(self.palettes, self.palette_aliases), BLOCK_ALIGNMENT),
        ])


@dataclass
class GameObjectEntry:
    cells: List[CellEntry] = field(default_factory=list)
    sprites: List[SpriteEntry] = field(default_factory=list)
    script: ObjectScriptData = field(default_factory=ObjectScriptData)
    unused: int = 0
    cell_aliases: List[int] = field(default_factory=list)

    @classmethod
    def decode(cls, reader: ByteReader, start: int, end: int) -> 'GameObjectEntry':
        cell_ptr, sprite_ptr, script_ptr, unused = _read_entry_header(reader, start)
        cells, cell_aliases = decode_cells(reader, start + cell_ptr, start + sprite_ptr)
        sprites = decode_sprites(reader, start + sprite_ptr, start + script_ptr)
        script = _decode_script_block(reader, ObjectScriptData, start + script_ptr, end)
        logger.debug("Object at 0x%X: %d cells, %d sprites, %d actions",
                     start, len(cells), len(sprites), len(script.actions))
        return cls(cells, sprites, script, unused, cell_aliases)

    def encode(self) -> bytes:
        return _layout_entry([
            pad_to(encode_cells(self.cells, self.cell_aliases), BLOCK_ALIGNMENT),
            pad_to(encode_sprites(self.sprites), BLOCK_ALIGNMENT),
            _script_block(self.script.encode()),
        ], self.unused)


Entry = Union[PlayerEntry, GameObjectEntry]


# =============================================================================
# Audio
# =============================================================================

@dataclass
class AudioSection:
    blobs: List[bytes] = field(default_factory=list)

    @classmethod
    def decode(cls, reader: ByteReader, start: int) -> 'AudioSection':
        table = PointerTable.read(reader, start, byte_order=AUDIO_BYTE_ORDER)
        if not table:
            if len(reader) != start + table.size:
                raise IncompleteConsumptionError("Empty audio section", start + table.size,
                                                 len(reader))
            return cls()

        blobs = []
        for i in range(len(table)):
            pos, length = table.resolve(i, len(reader) - start)
            reader.seek(pos)
            blobs.append(reader.read(length))
        logger.debug("Audio at 0x%X: %d blobs", start, len(blobs))
        return cls(blobs)

    def encode(self) -> bytes:
        table, data = PointerTable.write(self.blobs, byte_order=AUDIO_BYTE_ORDER, trailer=False)
        return table + data


# =============================================================================
# Object binary
# =============================================================================

@dataclass
class ObjectBinary:
    player: PlayerEntry = field(default_factory=PlayerEntry)
    objects: List[GameObjectEntry] = field(default_factory=list)
    audio: AudioSection = field(default_factory=AudioSection)

    @property
    def entries(self) -> List[Entry]:
        return [self.player] + list(self.objects)

    @classmethod
    def decode(cls, data: bytes) -> 'ObjectBinary':
        reader = ByteReader(data)
        table = PointerTable.read(reader, 0)
        if len(table) < 2:
            raise StructuralMismatchError(
                f"Top-level table needs a player and an audio slot, found {len(table)}", 0)

        # the audio pointer is the last slot, 8 bytes behind the sentinel's end
        reader.seek(reader.tell() - 8)
        audio_ptr = reader.u32()

        starts = list(table)
        player = PlayerEntry.decode(reader, starts[0], starts[1])
        objects = [GameObjectEntry.decode(reader, starts[i], starts[i + 1])
                   for i in range(1, len(starts) - 1)]
        audio = AudioSection.decode(reader, audio_ptr)

        logger.debug("Object binary: %d bytes, %d objects, %d audio blobs",
                     len(data), len(objects), len(audio.blobs))
        return cls(player, objects, audio)

    def encode(self) -> bytes:
        entries = [entry.encode() for entry in self.entries]
        entries.append(self.audio.encode())
        table, data = PointerTable.write(entries, trailer=False)
        out = bytearray(table)
        out.extend(data)
        return bytes(out)
