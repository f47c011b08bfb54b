"""
GGXX Script codec - instruction set, actions and script bodies

Player script layout:
    PlayData (0xE5 magic, u8, 39 x i16)      0x50 bytes
    opaque block                             0xB0 bytes
    actions...                               until the script-end action
Object scripts hold only the actions.

Action layout:
    u32 flags, u16 attack level, u8 damage, u8 collision mask
    instructions...                          until ActionEnd (0xFF)

An action whose flags satisfy flags & 0xFD == 0xFD is the script-end action:
its header bytes are themselves a ScriptEnd instruction (0xFD, flag, arg)
followed by the remaining header fields, and no instructions follow it.
"""

import logging
import struct
from dataclasses import astuple, dataclass, field, fields, make_dataclass
from types import MappingProxyType
from typing import ClassVar, Dict, List, Optional, Sequence, Tuple, Union

from ggxx_binary import ByteReader, UnknownOpcodeError

logger = logging.getLogger(__name__)


# =============================================================================
# Instruction table
# =============================================================================

# Operand widths
U8 = 'B'
U16 = 'H'
I16 = 'h'
U32 = 'I'

# A slot named RESERVED is parse-only: read, dropped, written back as zero
RESERVED = None

FLAG_ARG = (('flag', U8), ('arg', U16))
FLAG_SIGNED_ARG = (('flag', U8), ('arg', I16))
FLAG_MAGNITUDE = (('flag', U8), ('magnitude', I16))
FLAG_TWO_BYTES = (('flag', U8), ('arg', U8), ('arg2', U8))
FLAG_THREE_ARGS = (('flag', U8), ('arg', U16), ('arg2', U16), ('arg3', U16))
FLAG_ARG_DWORD = (('flag', U8), ('arg', U16), ('arg2', U32))
SOUND = (('data', U8), ('flag', U8), ('random_factor', U8))
NO_OPERANDS = ((RESERVED, U8), (RESERVED, U16))
RESERVED_ARG = ((RESERVED, U8), ('arg', U16))

OP_SCRIPT_END = 253
OP_ACTION_END = 255

# (opcode, name, layout)
INSTRUCTION_TABLE = (
    (0, 'CellBegin', (('duration', U8), ('cell_no', U16))),
    (1, 'Unk1', FLAG_ARG),
    (2, 'Unk2', FLAG_ARG),
    (3, 'Recovery', FLAG_ARG),
    (4, 'RenewCollision', FLAG_ARG),
    (5, 'Unk5', (('flag', U8), (RESERVED, U16))),
    (6, 'Unk6', FLAG_ARG),
    (7, 'Scale', (('flag', U8), ('stretch', I16))),
    (8, 'PosZ', (('flag', U8), ('depth', I16))),
    (9, 'Unk9', FLAG_ARG),
    (10, 'Unk10', FLAG_TWO_BYTES),
    (11, 'Unk11', FLAG_TWO_BYTES),
    (13, 'DoNotCheckAttack', NO_OPERANDS),
    (14, 'SetStrikeInvuln', NO_OPERANDS),
    (15, 'Reverse', FLAG_ARG),
    (16, 'DrawNormal', FLAG_ARG),
    (17, 'DrawReverse', FLAG_ARG),
    (18, 'EnableCancel', FLAG_ARG),
    (19, 'Unk19', FLAG_ARG),
    (23, 'OffsetXFromOwner', FLAG_MAGNITUDE),
    (24, 'OffsetYFromOwner', FLAG_MAGNITUDE),
    (25, 'InitInstance', (('flag', U8), ('anime_no', U16), ('obj_no', U32), ('kind', U32),
                          ('state_no', U16), ('is_check_col', U16))),
    (26, 'DeleteChildInstance', (('obj_no', U8), ('flag', U8), ('act_no', U8))),
    (27, 'InitRqSound', SOUND),
    (28, 'InitEnemyHitSeMode', SOUND),
    (29, 'Unk29', SOUND),
    (30, 'EnemyGuardModeVoice', SOUND),
    (31, 'EnemyDamageModeVoice', SOUND),
    (33, 'DownReturn', FLAG_ARG),
    (34, 'HitGravity', FLAG_SIGNED_ARG),
    (35, 'HitAirPushbackX', FLAG_SIGNED_ARG),
    (36, 'HitAirPushbackY', FLAG_SIGNED_ARG),
    (38, 'DeleteIttai', FLAG_ARG),
    (39, 'Unk39', FLAG_ARG),
    (40, 'Unk40', FLAG_ARG),
    (45, 'Unk45', FLAG_ARG),
    (47, 'Unk47', RESERVED_ARG),
    (48, 'AttackLevel', RESERVED_ARG),
    (49, 'Goto', (('flag', U8), (RESERVED, U16), ('jump_target', U32))),
    (50, 'Untech', FLAG_ARG),
    (52, 'AddTension', (('active', U8), ('hit', U16))),
    (53, 'Unk53', FLAG_THREE_ARGS),
    (54, 'Unk54', FLAG_ARG),
    (55, 'Unk55', FLAG_ARG),
    (57, 'Unk57', FLAG_ARG),
    (58, 'Unk58', FLAG_ARG),
    (60, 'Unk60', FLAG_ARG),
    (61, 'RemoveStrikeInvuln', NO_OPERANDS),
    (62, 'Unk62', FLAG_ARG),
    (63, 'EnableCancelSecondary', FLAG_ARG),
    (64, 'SuperFreeze', (('stop_self', U8), ('stop_world', U8), ('unk', U8))),
    (65, 'XTransform', FLAG_MAGNITUDE),
    (66, 'YTransform', FLAG_MAGNITUDE),
    (67, 'SetGravity', FLAG_MAGNITUDE),
    (68, 'Unk68', FLAG_ARG),
    (69, 'Unk69', FLAG_ARG),
    (70, 'Unk70', FLAG_ARG),
    (71, 'Unk71', FLAG_ARG_DWORD),
    (72, 'Unk72', FLAG_ARG),
    (73, 'ChipDamage', FLAG_ARG),
    (74, 'SetAttackStunVal', FLAG_ARG),
    (75, 'Unk75', FLAG_ARG),
    (76, 'SetStance', FLAG_ARG),
    (77, 'Unk77', FLAG_ARG),
    (78, 'SetProration', FLAG_ARG),
    (79, 'Unk79', FLAG_ARG),
    (80, 'SetThrowInvuln', FLAG_ARG),
    (81, 'Unk81', FLAG_ARG),
    (82, 'Unk82', FLAG_ARG),
    (83, 'Unk83', FLAG_ARG),
    (84, 'Pushback', FLAG_MAGNITUDE),
    (85, 'Stagger', FLAG_ARG),
    (86, 'Unk86', (('flag', U8), ('obj_id', U16), ('buffered_act', U16), ('act_id', U16))),
    (87, 'Unk87', FLAG_ARG),
    (88, 'Unk88', FLAG_THREE_ARGS),
    (89, 'Unk89', FLAG_ARG),
    (90, 'Unk90', FLAG_THREE_ARGS),
    (91, 'Unk91', FLAG_ARG_DWORD),
    (92, 'JumpInstall', FLAG_ARG),
    (93, 'Unk93', FLAG_ARG),
    (94, 'Unk94', FLAG_ARG_DWORD),
    (95, 'Unk95', (('rsrv', U8), ('arg1', U16), ('flag', U32), ('arg3', U16), ('arg4', U16))),
    (96, 'Unk96', (('flag', U8), ('arg1', U16), ('arg2', U16), ('arg3', U16))),
    (97, 'Unk97', (('flag', U8), ('arg1', U16), ('arg2', U16), ('arg3', U16), ('arg4', U16),
                   ('arg5', U16))),
    (98, 'Unk98', FLAG_SIGNED_ARG),
    (99, 'Unk99', FLAG_ARG),
    (100, 'Unk100', (('flag', U8), ('arg1', U16), ('arg2', U32))),
    (101, 'SetAttackProperties', (('flag', U8), ('arg', U16), ('unk1', U8), ('unk2', U8),
                                  ('unk3', U8), ('unk4', U8))),
    (102, 'Unk102', FLAG_THREE_ARGS),
    (103, 'Unk103', FLAG_THREE_ARGS),
    (OP_SCRIPT_END, 'ScriptEnd', FLAG_ARG),
    (OP_ACTION_END, 'ActionEnd', FLAG_ARG),
)


class ScriptInstruction:
    """
    Base of the generated instruction classes.
    Each subclass is a dataclass holding the named operands of one opcode;
    LAYOUT lists every slot in encoding order, reserved ones included.
    """
    OPCODE: ClassVar[int] = -1
    LAYOUT: ClassVar[Tuple[Tuple[Optional[str], str], ...]] = ()
    FORMAT: ClassVar[str] = '<'
    TERMINAL: ClassVar[bool] = False

    @property
    def name(self) -> str:
        return type(self).__name__

    @property
    def size(self) -> int:
        return 1 + struct.calcsize(self.FORMAT)

    def operands(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def encode(self) -> bytes:
        values = [getattr(self, slot) if slot else 0 for slot, _ in self.LAYOUT]
        return bytes([self.OPCODE]) + struct.pack(self.FORMAT, *values)


def _build_instruction_set():
    by_opcode = {}
    for opcode, name, layout in INSTRUCTION_TABLE:
        cls = make_dataclass(
            name,
            [(slot, int, field(default=0)) for slot, _ in layout if slot],
            bases=(ScriptInstruction,),
            namespace={
                '__module__': __name__,
                'OPCODE': opcode,
                'LAYOUT': layout,
                'FORMAT': '<' + ''.join(width for _, width in layout),
                'TERMINAL': opcode in (OP_SCRIPT_END, OP_ACTION_END),
            },
        )
        by_opcode[opcode] = cls
        globals()[name] = cls
    return by_opcode


INSTRUCTIONS = MappingProxyType(_build_instruction_set())
INSTRUCTIONS_BY_NAME = MappingProxyType({cls.__name__: cls for cls in INSTRUCTIONS.values()})

ScriptEnd = INSTRUCTIONS[OP_SCRIPT_END]
ActionEnd = INSTRUCTIONS[OP_ACTION_END]

# The per-opcode classes only exist once _build_instruction_set has run
__all__ = [
    'INSTRUCTION_TABLE', 'INSTRUCTIONS', 'INSTRUCTIONS_BY_NAME', 'OP_ACTION_END', 'OP_SCRIPT_END',
    'PLAYER_BLOCK_SIZE', 'ObjectScriptData', 'PlayData', 'PlayerScriptData', 'ScriptAction',
    'ScriptData', 'ScriptInstruction', 'decode_actions', 'decode_instruction', 'encode_actions',
    'format_instruction', 'format_script', 'parse_actions',
] + [name for _, name, _ in INSTRUCTION_TABLE]


def decode_instruction(reader: ByteReader) -> ScriptInstruction:
    """Reads one opcode and its operands. Unknown opcodes are fatal."""
    position = reader.tell()
    opcode = reader.u8()
    cls = INSTRUCTIONS.get(opcode)
    if cls is None:
        raise UnknownOpcodeError(opcode, position)
    values = reader.unpack(cls.FORMAT)
    return cls(**{slot: value for (slot, _), value in zip(cls.LAYOUT, values) if slot})


# =============================================================================
# Actions
# =============================================================================

ACTION_HEADER_FORMAT = '<IHBB'
SCRIPT_END_MASK = 0xFD


@dataclass
class ScriptAction:
    flags: int = 0
    attack_level: int = 0
    damage: int = 0
    collision_mask: int = 0
    instructions: List[ScriptInstruction] = field(default_factory=list)

    @property
    def is_script_end(self) -> bool:
        return bool(self.instructions) and isinstance(self.instructions[-1], ScriptEnd)

    @classmethod
    def decode(cls, reader: ByteReader) -> 'ScriptAction':
        flags, attack_level, damage, collision_mask = reader.unpack(ACTION_HEADER_FORMAT)
        action = cls(flags, attack_level, damage, collision_mask)

        if flags & SCRIPT_END_MASK == SCRIPT_END_MASK:
            action.instructions.append(ScriptEnd(flag=(flags >> 8) & 0xFF, arg=flags >> 16))
            return action

        while True:
            instruction = decode_instruction(reader)
            action.instructions.append(instruction)
            if instruction.TERMINAL:
                return action

    def encode(self) -> bytes:
        if self.flags & SCRIPT_END_MASK == SCRIPT_END_MASK:
            if len(self.instructions) != 1 or not isinstance(self.instructions[0], ScriptEnd):
                raise ValueError(
                    f"Script-end action (flags=0x{self.flags:X}) must hold exactly one ScriptEnd, "
                    f"found {[type(i).__name__ for i in self.instructions]}")
            end = self.instructions[0]
            flags = (self.flags & 0xFF) | (end.flag << 8) | (end.arg << 16)
            return struct.pack(ACTION_HEADER_FORMAT, flags, self.attack_level,
                               self.damage, self.collision_mask)

        out = bytearray(struct.pack(ACTION_HEADER_FORMAT, self.flags, self.attack_level,
                                    self.damage, self.collision_mask))
        for instruction in self.instructions:
            out.extend(instruction.encode())
        return bytes(out)


def decode_actions(reader: ByteReader) -> List[ScriptAction]:
    """Reads actions until the one that ends the script body."""
    start = reader.tell()
    actions = []
    while True:
        action = ScriptAction.decode(reader)
        actions.append(action)
        if action.is_script_end:
            break
    logger.debug("Script body at 0x%X: %d actions, %d bytes",
                 start, len(actions), reader.tell() - start)
    return actions


def encode_actions(actions: Sequence[ScriptAction]) -> bytes:
    return b''.join(action.encode() for action in actions)


# =============================================================================
# Script bodies
# =============================================================================

PLAY_DATA_MAGIC = b'\xE5'
PLAY_DATA_FORMAT = '<B39h'
PLAYER_BLOCK_SIZE = 0xB0


@dataclass
class PlayData:
    """Character tuning values at the start of a player script."""
    unk: int = 0
    fwalk_vel: int = 0
    bwalk_vel: int = 0
    fdash_init_vel: int = 0
    bdash_x_vel: int = 0
    bdash_y_vel: int = 0
    bdash_gravity: int = 0
    fjump_x_vel: int = 0
    bjump_x_vel: int = 0
    jump_y_vel: int = 0
    jump_gravity: int = 0
    fsuperjump_x_vel: int = 0
    bsuperjump_x_vel: int = 0
    superjump_y_vel: int = 0
    superjump_gravity: int = 0
    fdash_accel: int = 0
    fdash_reduce: int = 0
    init_homingjump_y_vel: int = 0
    init_homingjump_x_vel: int = 0
    init_homingjump_x_reduce: int = 0
    init_homingjump_y_offset: int = 0
    airdash_minimum_height: int = 0
    fairdash_time: int = 0
    bairdash_time: int = 0
    stun_res: int = 0
    defense: int = 0
    guts: int = 0
    critical: int = 0
    weight: int = 0
    airdash_count: int = 0
    airjump_count: int = 0
    fairdash_no_attack_time: int = 0
    bairdash_no_attack_time: int = 0
    fwalk_tension: int = 0
    fjump_tension: int = 0
    fdash_tension: int = 0
    fairdash_tension: int = 0
    guardbalance_defense: int = 0
    guardbalance_tension: int = 0
    instantblock_tension: int = 0

    @classmethod
    def decode(cls, reader: ByteReader) -> 'PlayData':
        reader.expect(PLAY_DATA_MAGIC, "PlayData magic")
        return cls(*reader.unpack(PLAY_DATA_FORMAT))

    def encode(self) -> bytes:
        return PLAY_DATA_MAGIC + struct.pack(PLAY_DATA_FORMAT, *astuple(self))


@dataclass
class ObjectScriptData:
    actions: List[ScriptAction] = field(default_factory=list)

    @classmethod
    def decode(cls, reader: ByteReader) -> 'ObjectScriptData':
        return cls(decode_actions(reader))

    def encode(self) -> bytes:
        return encode_actions(self.actions)


@dataclass
class PlayerScriptData:
    play_data: PlayData = field(default_factory=PlayData)
    unk_data: bytes = bytes(PLAYER_BLOCK_SIZE)
    actions: List[ScriptAction] = field(default_factory=list)

    @classmethod
    def decode(cls, reader: ByteReader) -> 'PlayerScriptData':
        play_data = PlayData.decode(reader)
        unk_data = reader.read(PLAYER_BLOCK_SIZE)
        return cls(play_data, unk_data, decode_actions(reader))

    def encode(self) -> bytes:
        if len(self.unk_data) != PLAYER_BLOCK_SIZE:
            raise ValueError(f"Player block must be 0x{PLAYER_BLOCK_SIZE:X} bytes, "
                             f"got 0x{len(self.unk_data):X}")
        return self.play_data.encode() + bytes(self.unk_data) + encode_actions(self.actions)


ScriptData = Union[PlayerScriptData, ObjectScriptData]


# =============================================================================
# Text listing
# =============================================================================

def format_instruction(instruction: ScriptInstruction) -> str:
    parts = [instruction.name]
    parts.extend(f"{key}={value}" for key, value in instruction.operands().items())
    return ' '.join(parts)


def format_script(script: ScriptData) -> str:
    """Renders a script body as an editable listing (see parse_actions)."""
    lines = []
    if isinstance(script, PlayerScriptData):
        lines.append("# PlayData")
        for key, value in zip((f.name for f in fields(PlayData)), astuple(script.play_data)):
            lines.append(f"#   {key} = {value}")
        lines.append("")

    for index, action in enumerate(script.actions):
        lines.append(f"action {index} flags=0x{action.flags:08X} attack_level={action.attack_level} "
                     f"damage={action.damage} collision_mask={action.collision_mask}")
        for instruction in action.instructions:
            lines.append(f"    {format_instruction(instruction)}")
    return '\n'.join(lines) + '\n'


def _parse_operands(tokens: Sequence[str], line_num: int) -> Dict[str, int]:
    values = {}
    for token in tokens:
        key, sep, value = token.partition('=')
        if not sep:
            raise ValueError(f"Line {line_num}: expected name=value, got {token!r}")
        try:
            values[key] = int(value, 0)
        except ValueError:
            raise ValueError(f"Line {line_num}: {key} is not an integer: {value!r}") from None
    return values


def parse_actions(text: str) -> List[ScriptAction]:
    """Parses a listing produced by format_script back into actions."""
    actions = []
    for line_num, line in enumerate(text.splitlines(), 1):
        line = line.split('#', 1)[0].strip()
        if not line:
            continue

        name, *tokens = line.split()
        if name == 'action':
            # the index after 'action' is informational
            header = _parse_operands([t for t in tokens if '=' in t], line_num)
            try:
                actions.append(ScriptAction(**header))
            except TypeError as e:
                raise ValueError(f"Line {line_num}: {e}") from None
            continue

        cls = INSTRUCTIONS_BY_NAME.get(name)
        if cls is None:
            raise ValueError(f"Line {line_num}: unknown instruction {name!r}")
        if not actions:
            raise ValueError(f"Line {line_num}: instruction outside of an action")
        try:
            instruction = cls(**_parse_operands(tokens, line_num))
        except TypeError as e:
            raise ValueError(f"Line {line_num}: {e}") from None
        actions[-1].instructions.append(instruction)
    return actions
