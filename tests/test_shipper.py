import json
import os

import pytest

from promfed.shipper import (
    META_FILENAME,
    ShipperMeta,
    read_meta_file,
    write_meta_file,
)

ID1 = "00000000010000000000000000"
ID2 = "00000000020000000000000000"
OTHER_ID = "01ARZ3NDEKTSV4RRFFQ69G5FAV"


def test_missing_meta_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_meta_file(tmp_path)


def test_round_trip_empty(tmp_path):
    write_meta_file(tmp_path, ShipperMeta(version=1))
    assert read_meta_file(tmp_path) == ShipperMeta(version=1, uploaded=[])


def test_round_trip_with_uploads(tmp_path):
    meta = ShipperMeta(version=1, uploaded=[ID1, ID2, OTHER_ID])
    write_meta_file(tmp_path, meta)
    assert read_meta_file(tmp_path) == meta


def test_written_format_is_tab_indented_json(tmp_path):
    write_meta_file(tmp_path, ShipperMeta(version=1, uploaded=[ID1]))
    text = (tmp_path / META_FILENAME).read_text()
    assert text == '{\n\t"version": 1,\n\t"uploaded": [\n\t\t"%s"\n\t]\n}\n' % ID1


def test_no_temporary_file_left(tmp_path):
    write_meta_file(tmp_path, ShipperMeta(version=1, uploaded=[ID1]))
    assert sorted(os.listdir(tmp_path)) == [META_FILENAME]


def test_overwrite_replaces_previous_content(tmp_path):
    write_meta_file(tmp_path, ShipperMeta(version=1, uploaded=[ID1, ID2]))
    write_meta_file(tmp_path, ShipperMeta(version=1, uploaded=[ID2]))
    assert read_meta_file(tmp_path).uploaded == [ID2]


def test_overwrite_replaces_directory_in_the_way(tmp_path):
    blocker = tmp_path / META_FILENAME
    blocker.mkdir()
    (blocker / "junk").write_text("x")
    write_meta_file(tmp_path, ShipperMeta(version=1, uploaded=[ID1]))
    assert read_meta_file(tmp_path).uploaded == [ID1]


def test_null_uploaded_reads_as_empty(tmp_path):
    (tmp_path / META_FILENAME).write_text('{"version": 1, "uploaded": null}')
    assert read_meta_file(tmp_path).uploaded == []


def test_lowercase_ulid_is_normalised(tmp_path):
    content = json.dumps({"version": 1, "uploaded": [OTHER_ID.lower()]})
    (tmp_path / META_FILENAME).write_text(content)
    assert read_meta_file(tmp_path).uploaded == [OTHER_ID]


@pytest.mark.parametrize("version", [0, 2])
def test_unexpected_version_raises(tmp_path, version):
    content = json.dumps({"version": version, "uploaded": []})
    (tmp_path / META_FILENAME).write_text(content)
    with pytest.raises(ValueError, match=f"unexpected meta file version {version}"):
        read_meta_file(tmp_path)


def test_missing_version_raises(tmp_path):
    (tmp_path / META_FILENAME).write_text('{"uploaded": []}')
    with pytest.raises(ValueError, match="unexpected meta file version 0"):
        read_meta_file(tmp_path)


def test_invalid_json_raises(tmp_path):
    (tmp_path / META_FILENAME).write_text("{not json")
    with pytest.raises(ValueError):
        read_meta_file(tmp_path)


@pytest.mark.parametrize(
    "bad_id",
    ["short", "8ZZZZZZZZZZZZZZZZZZZZZZZZZ", "0000000001000000000000000U", 42],
)
def test_invalid_block_id_raises(tmp_path, bad_id):
    content = json.dumps({"version": 1, "uploaded": [bad_id]})
    (tmp_path / META_FILENAME).write_text(content)
    with pytest.raises(ValueError):
        read_meta_file(tmp_path)


def test_to_json_from_json_round_trip():
    meta = ShipperMeta(version=1, uploaded=[ID2, ID1])
    assert ShipperMeta.from_json(meta.to_json()) == meta


def test_default_meta_is_version_one_and_empty():
    meta = ShipperMeta()
    assert (meta.version, meta.uploaded) == (1, [])