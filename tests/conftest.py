"""Synthetic object binaries shared by the test modules."""

import struct

import pytest

from ggxx_obj import (
    AudioSection, CellEntry, CollisionBox, GameObjectEntry, ObjectBinary, PaletteEntry,
    PlayerEntry, SpriteEntry, SpriteInfo,
)
from ggxx_script import (
    ActionEnd, CellBegin, Goto, InitRqSound, ObjectScriptData, PlayData, PlayerScriptData,
    Scale, ScriptAction, ScriptEnd,
)


def end_action(flag=0, arg=0):
    """The action that closes a script body."""
    return ScriptAction(flags=0xFD | (flag << 8) | (arg << 16), instructions=[ScriptEnd(flag, arg)])


def make_cells():
    return [
        CellEntry([CollisionBox(-5, 10, 20, 30, 1), CollisionBox(0, -8, 4, 4, 2)],
                  SpriteInfo(-1, 2, 3, 4)),
        CellEntry([], SpriteInfo(0, 0, 0, 7)),
    ]


def make_sprites():
    return [
        SpriteEntry(list(range(1, 9)), bytes(range(1, 33))),
        SpriteEntry(list(range(10, 18)), bytes(range(40, 60)), b'\xFF' * 8),
    ]


def make_palette(seed=0):
    return PaletteEntry(list(range(seed, seed + 8)),
                        [(i * 0x01010101 + seed) & 0xFFFFFFFF for i in range(256)])


def make_player():
    play_data = PlayData(unk=3, fwalk_vel=100, bwalk_vel=-50, defense=-2, guts=4)
    actions = [
        ScriptAction(0x10, 2, 30, 1, [
            CellBegin(duration=3, cell_no=0),
            Scale(flag=1, stretch=-20),
            Goto(flag=0, jump_target=0x1234),
            ActionEnd(),
        ]),
        end_action(),
    ]
    return PlayerEntry(make_cells(), make_sprites(),
                       PlayerScriptData(play_data, bytes(range(0xB0)), actions),
                       [make_palette(0), make_palette(1)])


def make_object(unused=0):
    actions = [
        ScriptAction(0, 0, 0, 0, [
            CellBegin(duration=1, cell_no=1),
            InitRqSound(data=5, flag=1, random_factor=2),
            ActionEnd(flag=1, arg=2),
        ]),
        end_action(flag=2, arg=1),
    ]
    return GameObjectEntry(make_cells()[:1], make_sprites(), ObjectScriptData(actions), unused)


def make_object_binary():
    return ObjectBinary(
        make_player(),
        [make_object(), make_object(unused=0xDEADBEEF)],
        AudioSection([b'RIFF' + bytes(12), b'\x01\x02\x03']),
    )


@pytest.fixture
def object_binary():
    return make_object_binary()


@pytest.fixture
def object_bytes():
    return make_object_binary().encode()


@pytest.fixture
def object_file(tmp_path, object_bytes):
    path = tmp_path / "sol.bin"
    path.write_bytes(object_bytes)
    return path


def entry_pointers(data, slot):
    """(entry start, 4 header pointers) for one top-level slot."""
    start = struct.unpack_from('<I', data, 4 * slot)[0]
    return start, struct.unpack_from('<4I', data, start)
