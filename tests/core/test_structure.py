"""Tests for the object/path model and tree listing parser."""

import pytest

from gitray.core.structure import (
    Collection,
    CollectionDetail,
    ContentRef,
    DetailEntry,
    StoreDetail,
    StoreStructure,
    chunk_path,
    decode_json,
    encode_json,
    tree_to_structure,
)


def make_structure():
    return StoreStructure(
        meta=ContentRef("meta.json", "m0"),
        collections=[
            Collection(
                name="bills",
                meta=ContentRef("bills/meta.json", "m1"),
                chunks=[ContentRef("bills/entry-0.json", "c0")],
                assets=[ContentRef("bills/assets/a.png", "a0")],
            ),
            Collection(name="tags", meta=ContentRef("tags/meta.json", "m2")),
        ],
    )


class TestStoreStructure:
    """Tests for StoreStructure."""

    def test_refs_flattening_order(self):
        paths = [ref.path for ref in make_structure().refs()]
        assert paths == [
            "meta.json",
            "bills/meta.json",
            "bills/entry-0.json",
            "bills/assets/a.png",
            "tags/meta.json",
        ]

    def test_duplicate_collection_names_rejected(self):
        with pytest.raises(ValueError):
            StoreStructure(
                collections=[
                    Collection("bills", ContentRef("bills/meta.json")),
                    Collection("bills", ContentRef("other/meta.json")),
                ]
            )

    def test_duplicate_meta_paths_rejected(self):
        with pytest.raises(ValueError):
            StoreStructure(
                collections=[
                    Collection("a", ContentRef("shared/meta.json")),
                    Collection("b", ContentRef("shared/meta.json")),
                ]
            )

    def test_dict_round_trip(self):
        structure = make_structure()
        assert StoreStructure.from_dict(structure.to_dict()) == structure

    def test_get_collection(self):
        structure = make_structure()
        assert structure.get_collection("tags").meta.path == "tags/meta.json"
        assert structure.get_collection("missing") is None


class TestStoreDetail:
    def test_structure_projection(self):
        detail = StoreDetail(
            meta=DetailEntry("meta.json", "m0", content={}),
            collections=[
                CollectionDetail(
                    name="bills",
                    meta=DetailEntry("bills/meta.json", "m1", content={}),
                    chunks=[DetailEntry("bills/entry-0.json", "c0", content=[])],
                )
            ],
        )
        structure = detail.structure()
        assert [r.path for r in structure.refs()] == [
            "meta.json",
            "bills/meta.json",
            "bills/entry-0.json",
        ]
        assert set(detail.files()) == {
            "meta.json",
            "bills/meta.json",
            "bills/entry-0.json",
        }


class TestTreeToStructure:
    """Tests for parsing a flat blob listing."""

    def test_parses_layout(self):
        structure = tree_to_structure(
            [
                ("meta.json", "root"),
                ("bills/meta.json", "bm"),
                ("bills/entry-1000.json", "c1"),
                ("bills/entry-0.json", "c0"),
                ("bills/assets/b.png", "ab"),
                ("bills/assets/a.png", "aa"),
            ]
        )
        assert structure.meta == ContentRef("meta.json", "root")
        bills = structure.get_collection("bills")
        assert bills.meta == ContentRef("bills/meta.json", "bm")
        assert [c.path for c in bills.chunks] == [
            "bills/entry-0.json",
            "bills/entry-1000.json",
        ]
        assert [a.path for a in bills.assets] == [
            "bills/assets/a.png",
            "bills/assets/b.png",
        ]

    def test_chunks_sorted_numerically(self):
        """entry-2000 sorts before entry-10000."""
        structure = tree_to_structure(
            [
                ("c/entry-10000.json", "x"),
                ("c/entry-2000.json", "y"),
                ("c/entry-0.json", "z"),
            ]
        )
        assert [c.path for c in structure.get_collection("c").chunks] == [
            "c/entry-0.json",
            "c/entry-2000.json",
            "c/entry-10000.json",
        ]

    def test_missing_meta_has_no_hash(self):
        structure = tree_to_structure([("c/entry-0.json", "x")])
        assert structure.meta == ContentRef("meta.json", None)
        assert structure.get_collection("c").meta == ContentRef("c/meta.json", None)

    def test_ignores_unknown_files(self):
        structure = tree_to_structure(
            [("README.md", "r"), ("c/notes.txt", "n"), ("c/entry-0.json", "x")]
        )
        assert [r.path for r in structure.refs()] == [
            "meta.json",
            "c/meta.json",
            "c/entry-0.json",
        ]

    def test_custom_entry_name(self):
        structure = tree_to_structure(
            [("c/item-0.json", "x"), ("c/entry-0.json", "y")], entry_name="item"
        )
        assert [c.path for c in structure.get_collection("c").chunks] == [
            "c/item-0.json"
        ]


def test_chunk_path():
    assert chunk_path("bills", "entry", 2000) == "bills/entry-2000.json"


def test_json_codec_keeps_unicode():
    payload = encode_json({"name": "café"})
    assert "café".encode("utf-8") in payload
    assert decode_json(payload) == {"name": "café"}
