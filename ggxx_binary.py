"""
GGXX binary primitives - errors, byte cursor, alignment and pointer tables
shared by the object binary and script codecs.

Pointer tables are sentinel-terminated lists of 32-bit offsets. Each table is
followed by 0xFF padding up to the next 16-byte boundary, and a table that is
already aligned still receives a full padding block (the block carries the
sentinel).
"""

import logging
import struct
from typing import Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


SENTINEL = 0xFFFFFFFF
SENTINEL_FILL = 0xFF
ZERO_FILL = 0x00
TABLE_ALIGNMENT = 0x10


# =============================================================================
# Errors
# =============================================================================

class GGXXFormatError(ValueError):
    """Base class for every decode failure."""


class StructuralMismatchError(GGXXFormatError):
    """A magic byte, size or offset does not match the expected layout."""

    def __init__(self, message: str, position: Optional[int] = None):
        if position is not None:
            message = f"{message} (at 0x{position:X})"
        super().__init__(message)
        self.position = position


class UnknownOpcodeError(GGXXFormatError):
    """Instruction byte outside the opcode table."""

    def __init__(self, opcode: int, position: int):
        super().__init__(f"Unknown script opcode {opcode} (0x{opcode:02X}) at 0x{position:X}")
        self.opcode = opcode
        self.position = position


class UnresolvedHeuristicError(GGXXFormatError):
    """The final sprite scan ran out of data without finding a terminator."""


class IncompleteConsumptionError(GGXXFormatError):
    """Bytes were left over that no decoded structure accounts for."""

    def __init__(self, message: str, start: int, end: int):
        super().__init__(f"{message}: 0x{start:X}-0x{end:X} holds unexpected bytes")
        self.start = start
        self.end = end


# =============================================================================
# Alignment helpers
# =============================================================================

def needed_to_align(size: int, step: int) -> int:
    """Bytes needed to reach the next multiple of step (0 when aligned)."""
    rem = size % step
    return 0 if rem == 0 else step - rem


def needed_to_align_with_excess(size: int, step: int) -> int:
    """Like needed_to_align, but an aligned size gets a whole extra step."""
    return step - size % step


def pad_to(data: bytes, step: int, fill: int = ZERO_FILL) -> bytes:
    return data + bytes([fill]) * needed_to_align(len(data), step)


def is_filled(data: bytes, fill: int) -> bool:
    return not data.strip(bytes([fill]))


# =============================================================================
# Byte cursor
# =============================================================================

class ByteReader:
    """Seekable cursor over one owned copy of the input buffer."""

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.pos = 0

    def __len__(self) -> int:
        return len(self.data)

    def tell(self) -> int:
        return self.pos

    def seek(self, pos: int):
        if pos < 0 or pos > len(self.data):
            raise StructuralMismatchError(
                f"Offset 0x{pos:X} lies outside the {len(self.data)} byte buffer")
        self.pos = pos

    def read(self, size: int) -> bytes:
        end = self.pos + size
        if size < 0 or end > len(self.data):
            raise StructuralMismatchError(
                f"Expected {size} bytes, only {len(self.data) - self.pos} left", self.pos)
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def unpack(self, fmt: str) -> tuple:
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))

    def u8(self) -> int:
        return self.read(1)[0]

    def u16(self, byte_order: str = '<') -> int:
        return self.unpack(byte_order + 'H')[0]

    def i16(self, byte_order: str = '<') -> int:
        return self.unpack(byte_order + 'h')[0]

    def u32(self, byte_order: str = '<') -> int:
        return self.unpack(byte_order + 'I')[0]

    def peek_u8(self) -> int:
        if self.pos >= len(self.data):
            raise StructuralMismatchError("Unexpected end of data", self.pos)
        return self.data[self.pos]

    def expect(self, magic: bytes, what: str):
        """Consumes magic, raising a StructuralMismatchError on any difference."""
        start = self.pos
        actual = self.read(len(magic))
        if actual != magic:
            raise StructuralMismatchError(
                f"{what}: expected {magic.hex(' ').upper()}, found {actual.hex(' ').upper()}", start)

    def expect_fill(self, start: int, end: int, fill: int, what: str):
        """Checks that [start, end) holds nothing but the fill byte."""
        if end < start:
            raise StructuralMismatchError(f"{what} overruns the following block", end)
        if not is_filled(self.data[start:end], fill):
            raise IncompleteConsumptionError(what, start, end)

    def expect_trailer(self, start: int, end: int, trailer_size: int, what: str):
        """
        Checks the gap after the last entry of an array: zero alignment,
        the 0xFF trailer block, then zero block padding.
        """
        if end < start:
            raise StructuralMismatchError(f"{what} overruns the following block", end)
        region = self.data[start:end]
        marker = region.find(bytes([SENTINEL_FILL]) * trailer_size)
        if (marker < 0
                or not is_filled(region[:marker], ZERO_FILL)
                or not is_filled(region[marker + trailer_size:], ZERO_FILL)):
            raise IncompleteConsumptionError(what, start, end)


# =============================================================================
# Sentinel pointer table
# =============================================================================

def resolve(index: int, offsets: Sequence[int], end_of_section: int) -> Tuple[int, int]:
    """
    Returns (offset, inferred_length) for one table slot.
    Every entry but the last ends where the next begins; the last one ends at
    end_of_section, given relative to the same base as the offsets.
    """
    offset = offsets[index]
    following = offsets[index + 1] if index + 1 < len(offsets) else end_of_section
    length = following - offset
    if length < 0:
        raise StructuralMismatchError(
            f"Pointer table slot {index} at 0x{offset:X} ends before it starts (0x{following:X})")
    return offset, length


class PointerTable:
    """Offsets read from a sentinel-terminated table, relative to base."""

    def __init__(self, base: int, offsets: List[int], padding: int):
        self.base = base
        self.offsets = offsets
        self.padding = padding

    def __len__(self) -> int:
        return len(self.offsets)

    def __iter__(self) -> Iterator[int]:
        return iter(self.offsets)

    def __getitem__(self, index: int) -> int:
        return self.offsets[index]

    @property
    def size(self) -> int:
        """Table bytes: offsets plus the sentinel/0xFF padding block."""
        return 4 * len(self.offsets) + self.padding

    @classmethod
    def read(cls, reader: ByteReader, base_position: int, byte_order: str = '<',
             alignment: int = TABLE_ALIGNMENT) -> 'PointerTable':
        reader.seek(base_position)
        offsets = []
        while True:
            value = reader.u32(byte_order)
            if value == SENTINEL:
                break
            offsets.append(value)
        stop = reader.tell()

        if offsets:
            padding = offsets[0] - 4 * len(offsets)
            if padding < 4:
                raise StructuralMismatchError(
                    f"First entry (0x{offsets[0]:X}) overlaps its own pointer table", base_position)
        else:
            padding = needed_to_align_with_excess(0, alignment)

        # the sentinel itself is the first 4 bytes of the padding block
        reader.expect_fill(stop, base_position + 4 * len(offsets) + padding, SENTINEL_FILL,
                           "Pointer table padding")
        reader.seek(stop)
        logger.debug("Pointer table at 0x%X: %d entries, %d padding bytes",
                     base_position, len(offsets), padding)
        return cls(base_position, offsets, padding)

    def resolve(self, index: int, end_of_section: int) -> Tuple[int, int]:
        """Returns (absolute_position, inferred_length) for one slot."""
        offset, length = resolve(index, self.offsets, end_of_section)
        return self.base + offset, length

    def aliases(self) -> List[int]:
        """Slots that repeat the offset of the slot before them."""
        return [i for i in range(1, len(self.offsets)) if self.offsets[i] == self.offsets[i - 1]]

    def resolve_span(self, index: int, end_of_section: int) -> Tuple[int, int, bool]:
        """
        Returns (absolute_position, length, is_last) where the span runs to the
        next distinct offset, so aliased slots all see the same bytes.
        is_last is set for the span that ends at end_of_section.
        """
        offset = self.offsets[index]
        following = next((o for o in self.offsets[index + 1:] if o != offset), None)
        is_last = following is None
        if is_last:
            following = end_of_section
        if following < offset:
            raise StructuralMismatchError(
                f"Pointer table slot {index} at 0x{offset:X} ends before it starts (0x{following:X})")
        return self.base + offset, following - offset, is_last

    @staticmethod
    def write(entries: Sequence[bytes], alignment: int = TABLE_ALIGNMENT, byte_order: str = '<',
              trailer: bool = True, aliases: Sequence[int] = ()) -> Tuple[bytes, bytes]:
        """
        Lays out entries behind a freshly computed table.
        Returns (table_bytes, data_bytes); data_bytes ends with a 0xFF block
        as long as the table padding when trailer is set.
        Slots listed in aliases reuse the previous slot's offset and add no data;
        their entry bytes must equal the previous slot's.
        """
        aliased = set(aliases)
        for index in sorted(aliased):
            if not 0 < index < len(entries):
                raise ValueError(f"Alias slot {index} has no slot before it")
            if bytes(entries[index]) != bytes(entries[index - 1]):
                raise ValueError(f"Alias slot {index} differs from slot {index - 1}")

        padding = needed_to_align_with_excess(4 * len(entries), alignment)
        running = 4 * len(entries) + padding

        table = bytearray()
        data = bytearray()
        previous = running
        for i, entry in enumerate(entries):
            if i in aliased:
                table.extend(struct.pack(byte_order + 'I', previous))
                continue
            table.extend(struct.pack(byte_order + 'I', running))
            data.extend(entry)
            previous = running
            running += len(entry)
        table.extend(bytes([SENTINEL_FILL]) * padding)

        if trailer:
            data.extend(bytes([SENTINEL_FILL]) * padding)
        return bytes(table), bytes(data)
