import json

import pytest

from xcomsave import (BufferOverrun, DecodeOptions, FormatVersionMismatch, IntProperty, MissingSentinel,
                      StaticArrayProperty, UnexpectedNonEmptyTable, decode_save, document_tree, read_savefile)
from savebuilder import (actor_table, checkpoint, checkpoint_chunk, container, float_prop, header, int_prop, none,
                         save_file, str_prop, string, u32)

ZLIB = DecodeOptions(compression="zlib")


def minimal_body() -> bytes:
    return (actor_table([("Foo", 0)])
            + checkpoint_chunk([checkpoint("XGStrategy_0", int_prop("HP", 5) + none())]))


def test_minimal_save():
    save = decode_save(save_file(minimal_body()), ZLIB)

    assert save.header.version == 0x10
    assert [(a.name, a.instance_num) for a in save.actor_table] == [("Foo", 0)]
    assert len(save.checkpoints) == 1

    chunk = save.checkpoints[0]
    assert chunk.unknown_int1 == 1
    assert chunk.game_name == "Game"
    assert chunk.map_name == "Command1"
    assert chunk.unknown_int4 == 0x1234

    (chk,) = chunk.checkpoint_table
    (hp,) = chk.properties
    assert isinstance(hp, IntProperty)
    assert hp.name == "HP"
    assert hp.value == 5


def test_multiple_chunks_across_container_chunks():
    soldiers = (str_prop("strFirstName", "Jane") + int_prop("aStats", 3, 0) + int_prop("aStats", 4, 1)
                + none())
    body = (actor_table([("Foo", 0), ("Bar", 1)])
            + checkpoint_chunk([checkpoint("XGStrategy_0", int_prop("HP", 5) + none())])
            + checkpoint_chunk([checkpoint("XGUnit_0", soldiers, class_name="XGUnit"),
                                checkpoint("XGUnit_1", none(), class_name="XGUnit")],
                               actors=[("XGUnit", 2)]))
    save = decode_save(save_file(body, chunk_size=64), ZLIB)

    assert len(save.checkpoints) == 2
    second = save.checkpoints[1]
    assert [c.name for c in second.checkpoint_table] == ["XGUnit_0", "XGUnit_1"]
    assert [(a.name, a.instance_num) for a in second.actor_table] == [("XGUnit", 2)]
    name, stats = second.checkpoint_table[0].properties
    assert name.value == "Jane"
    assert isinstance(stats, StaticArrayProperty)
    assert stats.value == [3, 4]
    assert second.checkpoint_table[1].properties == []


def test_actor_table_only():
    save = decode_save(save_file(actor_table([("Foo", 0)])), ZLIB)
    assert save.checkpoints == []


def test_decoding_is_repeatable():
    raw = save_file(minimal_body())
    assert decode_save(raw, ZLIB) == decode_save(raw, ZLIB)


def test_version_mismatch_aborts():
    with pytest.raises(FormatVersionMismatch):
        decode_save(save_file(minimal_body(), hdr=header(version=0x0F)), ZLIB)


def test_missing_sentinel_aborts():
    body = actor_table([("Foo", 0)]) + checkpoint_chunk([], sentinel="Nope")
    with pytest.raises(MissingSentinel) as excinfo:
        decode_save(save_file(body), ZLIB)
    # actor table (4 + 8 + 4) then unknown int and empty string
    assert excinfo.value.offset == 16 + 4 + 4


def test_nonzero_name_table_aborts():
    body = actor_table([]) + checkpoint_chunk([], name_table_len=1)
    with pytest.raises(UnexpectedNonEmptyTable):
        decode_save(save_file(body), ZLIB)


def test_nonempty_template_table_aborts():
    templates = u32(1) + string("XComGame.XGUnit") + b"\x00" * 64 + string("")
    body = actor_table([]) + checkpoint_chunk([], templates=templates)
    with pytest.raises(UnexpectedNonEmptyTable):
        decode_save(save_file(body), ZLIB)


def test_truncated_chunk_record_aborts():
    body = minimal_body()[:-2]
    with pytest.raises(BufferOverrun):
        decode_save(save_file(body), ZLIB)


def test_read_savefile_and_dump(tmp_path):
    path = tmp_path / "save1"
    path.write_bytes(save_file(minimal_body()))
    dump = tmp_path / "output.dat"

    save = read_savefile(path, DecodeOptions(compression="zlib", dump_path=dump))

    assert save.actor_table[0].name == "Foo"
    assert dump.read_bytes() == minimal_body()


def test_default_codec_is_lzo():
    lzo = pytest.importorskip("lzo")
    raw = save_file(minimal_body(), compress=lambda piece: lzo.compress(piece, 1, False))
    save = decode_save(raw)
    assert save.checkpoints[0].checkpoint_table[0].properties[0].value == 5


def test_document_tree_is_json_serializable():
    tree = document_tree(decode_save(save_file(minimal_body()), ZLIB))
    restored = json.loads(json.dumps(tree))
    assert restored["header"]["language"] == "INT"
    assert restored["actor_table"] == [{"name": "Foo", "instance_num": 0}]
    (node,) = restored["checkpoints"][0]["checkpoints"][0]["properties"]
    assert node == {"name": "HP", "type": "IntProperty", "meta": "", "children": None, "value": 5}


def test_header_reads_are_bounded_by_body_offset():
    raw = header() + b"\xff" * 8
    with pytest.raises(BufferOverrun):
        decode_save(raw + container(minimal_body()), DecodeOptions(compression="zlib", body_offset=20))


def test_document_tree_keeps_non_finite_floats_json_safe():
    props = float_prop("fAim", float("nan")) + float_prop("fRange", float("-inf")) + none()
    body = actor_table([]) + checkpoint_chunk([checkpoint("XGUnit_0", props, vector=(float("inf"), 0.0, 1.0))])
    tree = document_tree(decode_save(save_file(body), ZLIB))

    restored = json.loads(json.dumps(tree, allow_nan=False))
    (chk,) = restored["checkpoints"][0]["checkpoints"]
    assert chk["vector"] == ["inf", 0.0, 1.0]
    assert [p["value"] for p in chk["properties"]] == ["nan", "-inf"]
